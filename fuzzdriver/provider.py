"""
Structured access to fuzzer input bytes.

FuzzedDataProvider turns the raw input into typed values. Method names follow
atheris so that targets written against ``atheris.FuzzedDataProvider`` run
unchanged. Unlike atheris, the provider can be rewound with ``reset()``, which
the runner needs to re-derive the crashing bytes and to re-run a target under
a RecordingFuzzedDataProvider when writing a reproducer.

Integral values are taken from the end of the input and byte strings from the
front, the same layout libFuzzer's FuzzedDataProvider uses.
"""

from __future__ import annotations

import base64
import math
import pickle
import sys
from typing import Any, Callable, Sequence

from fuzzdriver.errors import ReproducerError

# Fixed so that the same recording always serializes to the same payload.
PICKLE_PROTOCOL = 4

UINT64_MAX = 2**64 - 1


class _DerivedConsumers:
    """Consumers expressed in terms of the primitive methods on ``self``."""

    def PickValueInList(self, values: Sequence[Any]) -> Any:
        if not values:
            raise ValueError("PickValueInList() requires a non-empty sequence")
        return values[self.ConsumeIntInRange(0, len(values) - 1)]

    def ConsumeIntList(self, count: int, num_bytes: int) -> list[int]:
        return [self.ConsumeInt(num_bytes) for _ in range(count)]

    def ConsumeIntListInRange(self, count: int, min_value: int, max_value: int) -> list[int]:
        return [self.ConsumeIntInRange(min_value, max_value) for _ in range(count)]

    def ConsumeFloatList(self, count: int) -> list[float]:
        return [self.ConsumeFloat() for _ in range(count)]

    def ConsumeFloatListInRange(
        self, count: int, min_value: float, max_value: float
    ) -> list[float]:
        return [self.ConsumeFloatInRange(min_value, max_value) for _ in range(count)]

    def ConsumeProbabilityList(self, count: int) -> list[float]:
        return [self.ConsumeProbability() for _ in range(count)]

    # Methods defined by subclasses; declared for type checkers.
    ConsumeInt: Callable[[int], int]
    ConsumeIntInRange: Callable[[int, int], int]
    ConsumeFloat: Callable[[], float]
    ConsumeFloatInRange: Callable[[float, float], float]
    ConsumeProbability: Callable[[], float]


class FuzzedDataProvider(_DerivedConsumers):
    """
    A cursor over one fuzzer input.

    The runner keeps a single instance for the whole process and calls
    ``feed()`` with every new input, which also rewinds it.
    """

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytes(data)
        self._front = 0
        self._back = len(self._data)

    def feed(self, data: bytes) -> None:
        """Replace the input and rewind."""
        self._data = bytes(data)
        self.reset()

    def reset(self) -> None:
        """Rewind to the state right after the input was fed."""
        self._front = 0
        self._back = len(self._data)

    def remaining_bytes(self) -> int:
        return self._back - self._front

    def buffer(self) -> bytes:
        """The bytes not consumed yet, without consuming them."""
        return self._data[self._front : self._back]

    def _take_front(self, count: int) -> bytes:
        count = max(0, min(count, self.remaining_bytes()))
        chunk = self._data[self._front : self._front + count]
        self._front += count
        return chunk

    def _consume_int_in_range(self, min_value: int, max_value: int) -> int:
        if min_value > max_value:
            raise ValueError(f"min_value {min_value} is greater than max_value {max_value}")
        span = max_value - min_value
        result = 0
        offset = 0
        while (span >> offset) > 0 and self._back > self._front:
            self._back -= 1
            result = (result << 8) | self._data[self._back]
            offset += 8
        if span:
            result %= span + 1
        else:
            result = 0
        return min_value + result

    def ConsumeBytes(self, count: int) -> bytes:
        return self._take_front(count)

    def ConsumeRemainingAsBytes(self) -> bytes:
        return self._take_front(self.remaining_bytes())

    def ConsumeInt(self, num_bytes: int) -> int:
        """Consume a signed integer of *num_bytes* bytes (two's complement)."""
        bits = 8 * num_bytes
        if bits <= 0:
            return 0
        value = self._consume_int_in_range(0, 2**bits - 1)
        if value >= 2 ** (bits - 1):
            value -= 2**bits
        return value

    def ConsumeUInt(self, num_bytes: int) -> int:
        """Consume an unsigned integer of *num_bytes* bytes."""
        bits = 8 * num_bytes
        if bits <= 0:
            return 0
        return self._consume_int_in_range(0, 2**bits - 1)

    def ConsumeIntInRange(self, min_value: int, max_value: int) -> int:
        return self._consume_int_in_range(min_value, max_value)

    def ConsumeBool(self) -> bool:
        return bool(self._consume_int_in_range(0, 255) & 1)

    def ConsumeProbability(self) -> float:
        return self._consume_int_in_range(0, UINT64_MAX) / UINT64_MAX

    def ConsumeFloatInRange(self, min_value: float, max_value: float) -> float:
        if min_value > max_value:
            raise ValueError(f"min_value {min_value} is greater than max_value {max_value}")
        result = min_value
        span = max_value - min_value
        if math.isinf(span):
            # The full range does not fit in a float; split it in two halves.
            span = max_value / 2.0 - min_value / 2.0
            if self.ConsumeBool():
                result += span
        return result + span * self.ConsumeProbability()

    def ConsumeFloat(self) -> float:
        return self.ConsumeFloatInRange(-sys.float_info.max, sys.float_info.max)

    def ConsumeRegularFloat(self) -> float:
        """A finite float; never NaN or infinity."""
        return self.ConsumeFloatInRange(-sys.float_info.max, sys.float_info.max)

    def _consume_code_points(self, count: int, no_surrogates: bool) -> str:
        if count <= 0 or not self.remaining_bytes():
            return ""
        selector = self._take_front(1)[0]
        if not selector & 1:
            raw = self._take_front(count)
            return "".join(chr(b & 0x7F) for b in raw)
        width = 2 if not selector & 2 else 4
        raw = self._take_front(count * width)
        raw = raw[: len(raw) - len(raw) % width]
        chars = []
        for i in range(0, len(raw), width):
            code_point = int.from_bytes(raw[i : i + width], "little")
            if width == 4:
                code_point %= 0x110000
            if no_surrogates and 0xD800 <= code_point <= 0xDFFF:
                code_point = 0xFFFD
            chars.append(chr(code_point))
        return "".join(chars)

    def ConsumeUnicode(self, count: int) -> str:
        return self._consume_code_points(count, no_surrogates=False)

    def ConsumeString(self, count: int) -> str:
        return self._consume_code_points(count, no_surrogates=False)

    def ConsumeUnicodeNoSurrogates(self, count: int) -> str:
        return self._consume_code_points(count, no_surrogates=True)


def _recorded(name: str) -> Callable[..., Any]:
    def method(self: RecordingFuzzedDataProvider, *args: Any) -> Any:
        value = getattr(self._provider, name)(*args)
        self.recorded.append((name, value))
        return value

    method.__name__ = name
    return method


class RecordingFuzzedDataProvider(_DerivedConsumers):
    """
    Proxy that records every primitive value a target consumes.

    The recording can be serialized into a printable payload and fed back
    through CannedFuzzedDataProvider, which reproduces the target's view of the
    input without the original bytes or the provider's decoding rules.
    """

    def __init__(self, provider: FuzzedDataProvider) -> None:
        self._provider = provider
        self.recorded: list[tuple[str, Any]] = []

    ConsumeBytes = _recorded("ConsumeBytes")
    ConsumeUnicode = _recorded("ConsumeUnicode")
    ConsumeUnicodeNoSurrogates = _recorded("ConsumeUnicodeNoSurrogates")
    ConsumeString = _recorded("ConsumeString")
    ConsumeInt = _recorded("ConsumeInt")
    ConsumeUInt = _recorded("ConsumeUInt")
    ConsumeIntInRange = _recorded("ConsumeIntInRange")
    ConsumeBool = _recorded("ConsumeBool")
    ConsumeFloat = _recorded("ConsumeFloat")
    ConsumeRegularFloat = _recorded("ConsumeRegularFloat")
    ConsumeFloatInRange = _recorded("ConsumeFloatInRange")
    ConsumeProbability = _recorded("ConsumeProbability")
    ConsumeRemainingAsBytes = _recorded("ConsumeRemainingAsBytes")
    remaining_bytes = _recorded("remaining_bytes")
    buffer = _recorded("buffer")

    def serialize(self) -> str:
        """Encode the recording as base64 text."""
        try:
            raw = pickle.dumps(self.recorded, protocol=PICKLE_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise ReproducerError(f"could not serialize {len(self.recorded)} recorded values") from e
        return base64.b64encode(raw).decode("ascii")


def _replayed(name: str) -> Callable[..., Any]:
    def method(self: CannedFuzzedDataProvider, *args: Any) -> Any:
        return self._next(name)

    method.__name__ = name
    return method


class CannedFuzzedDataProvider(_DerivedConsumers):
    """Replays values captured by RecordingFuzzedDataProvider, in order."""

    def __init__(self, recorded: Sequence[tuple[str, Any]]) -> None:
        self._recorded = list(recorded)
        self._position = 0

    @classmethod
    def from_serialized(cls, payload: str) -> CannedFuzzedDataProvider:
        return cls(pickle.loads(base64.b64decode(payload)))

    def _next(self, name: str) -> Any:
        if self._position >= len(self._recorded):
            raise ValueError(f"{name}() called after all recorded values were consumed")
        expected, value = self._recorded[self._position]
        if expected != name:
            raise ValueError(
                f"recorded call #{self._position} was {expected}(), target called {name}()"
            )
        self._position += 1
        return value

    ConsumeBytes = _replayed("ConsumeBytes")
    ConsumeUnicode = _replayed("ConsumeUnicode")
    ConsumeUnicodeNoSurrogates = _replayed("ConsumeUnicodeNoSurrogates")
    ConsumeString = _replayed("ConsumeString")
    ConsumeInt = _replayed("ConsumeInt")
    ConsumeUInt = _replayed("ConsumeUInt")
    ConsumeIntInRange = _replayed("ConsumeIntInRange")
    ConsumeBool = _replayed("ConsumeBool")
    ConsumeFloat = _replayed("ConsumeFloat")
    ConsumeRegularFloat = _replayed("ConsumeRegularFloat")
    ConsumeFloatInRange = _replayed("ConsumeFloatInRange")
    ConsumeProbability = _replayed("ConsumeProbability")
    ConsumeRemainingAsBytes = _replayed("ConsumeRemainingAsBytes")
    remaining_bytes = _replayed("remaining_bytes")
    buffer = _replayed("buffer")
