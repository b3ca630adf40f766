"""
Finding capture, normalization and deduplication for fuzzdriver.

This module provides:
- Finding / Frame: a captured failure with its cause chain and stack frames
- FindingSlot: the explicit-report side channel (last write wins)
- normalize_finding: strips hook frames and unwraps InjectedFinding wrappers
- compute_dedup_token: the stable 64-bit identity of a finding
- DedupFilter: the ignore set and keep-going budget
"""

from __future__ import annotations

import hashlib
import os
import sys
import threading
import traceback
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Iterator, TextIO

from fuzzdriver.errors import FuzzDriverError

# Frames from files below this directory belong to the harness and never
# contribute to a finding's identity.
HARNESS_DIR = os.path.dirname(os.path.abspath(__file__))

# Name of the entry point every fuzz target defines.
TEST_ONE_INPUT = "fuzzer_test_one_input"

# Path prefixes of modules that install hooks into target code. Their frames
# are stripped from the top of a finding's stack by normalize_finding().
HOOK_PATHS: list[str] = []


class InjectedFinding(Exception):
    """
    Raised by hooks and sanitizers to flag a problem inside target code.

    When raised ``from`` an underlying exception, normalization replaces the
    wrapper with that cause so that the finding is identified by the failure
    itself rather than by the hook that noticed it.
    """


def register_hook_path(path: str | Path) -> None:
    """Mark every module below *path* as hook code."""
    HOOK_PATHS.append(os.path.abspath(path))


@dataclass(frozen=True)
class Frame:
    filename: str
    function: str
    lineno: int | None

    @property
    def is_harness(self) -> bool:
        return os.path.abspath(self.filename).startswith(HARNESS_DIR + os.sep)

    @property
    def is_hook(self) -> bool:
        path = os.path.abspath(self.filename)
        return any(path.startswith(prefix) for prefix in HOOK_PATHS)

    def __str__(self) -> str:
        # Basename only: the token must not depend on where the target is installed.
        return f"{self.function}({os.path.basename(self.filename)}:{self.lineno})"


def _frames_from_summaries(summaries: Iterable[traceback.FrameSummary]) -> tuple[Frame, ...]:
    """Convert outermost-first frame summaries into innermost-first Frames."""
    frames = [Frame(s.filename, s.name, s.lineno) for s in summaries]
    frames.reverse()
    return tuple(frames)


def _safe_str(exc: BaseException) -> str:
    try:
        return str(exc)
    except Exception:
        # Same placeholder the traceback module prints.
        return "<exception str() failed>"


def _next_in_chain(exc: BaseException) -> BaseException | None:
    if exc.__cause__ is not None:
        return exc.__cause__
    if exc.__context__ is not None and not exc.__suppress_context__:
        return exc.__context__
    return None


@dataclass(frozen=True)
class Finding:
    """
    A captured failure: what was raised (or reported), where, and why.

    Frames are ordered innermost first. ``cause`` links to the next exception
    in the ``__cause__``/``__context__`` chain.
    """

    kind: str
    message: str
    frames: tuple[Frame, ...]
    cause: Finding | None = None
    exception: BaseException | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        stack: Iterable[traceback.FrameSummary] | None = None,
        _seen: set[int] | None = None,
    ) -> Finding:
        """
        Build a Finding from an exception and its cause chain.

        Args:
            exc: The exception that was raised or reported.
            stack: Outermost-first frames to use when *exc* was never raised
                and thus carries no traceback (explicit reports).

        Returns:
            The Finding for *exc*, with causes linked recursively.
        """
        seen = _seen if _seen is not None else set()
        seen.add(id(exc))

        if exc.__traceback__ is not None:
            frames = _frames_from_summaries(traceback.extract_tb(exc.__traceback__))
        elif stack is not None:
            frames = _frames_from_summaries(stack)
        else:
            frames = ()

        cause = None
        nxt = _next_in_chain(exc)
        if nxt is not None and id(nxt) not in seen:
            cause = cls.from_exception(nxt, _seen=seen)

        kind = type(exc).__qualname__
        module = type(exc).__module__
        if module not in ("builtins", "__main__"):
            kind = f"{module}.{kind}"

        return cls(kind=kind, message=_safe_str(exc), frames=frames, cause=cause, exception=exc)

    def chain(self) -> Iterator[Finding]:
        """Yield this finding followed by each of its causes."""
        link: Finding | None = self
        while link is not None:
            yield link
            link = link.cause

    def significant_frames(self) -> tuple[Frame, ...]:
        """
        Frames that identify the failure.

        Harness frames are dropped, as is everything calling into the target's
        entry point, so that a reproducer script running the same input yields
        the same frames as the fuzzing run.
        """
        frames = [f for f in self.frames if not f.is_harness]
        for index in range(len(frames) - 1, -1, -1):
            if frames[index].function == TEST_ONE_INPUT:
                del frames[index + 1 :]
                break
        return tuple(frames)


class FindingSlot:
    """
    Holds at most one explicitly reported finding.

    Targets may report from threads they spawn, so writes are serialized and the
    last write wins. The slot is read and cleared once per iteration by the
    runner, after the target call has returned.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finding: Finding | None = None

    def report(self, exc: BaseException) -> None:
        """Record *exc* as this iteration's finding, replacing any earlier report."""
        finding = Finding.from_exception(exc, stack=traceback.extract_stack())
        with self._lock:
            self._finding = finding

    def take(self) -> Finding | None:
        """Return the reported finding, if any, and clear the slot."""
        with self._lock:
            finding, self._finding = self._finding, None
        return finding

    def peek(self) -> Finding | None:
        with self._lock:
            return self._finding


def normalize_finding(finding: Finding) -> Finding:
    """
    Undo the traces hooks leave on a finding.

    InjectedFinding wrappers that carry a cause are replaced by that cause, and
    frames from registered hook modules are dropped from the top of each stack.
    """
    while (
        finding.exception is not None
        and isinstance(finding.exception, InjectedFinding)
        and finding.cause is not None
    ):
        finding = finding.cause

    def strip(link: Finding) -> Finding:
        frames = list(link.frames)
        while frames and (frames[0].is_hook or frames[0].is_harness):
            frames.pop(0)
        cause = strip(link.cause) if link.cause is not None else None
        return replace(link, frames=tuple(frames), cause=cause)

    if not HOOK_PATHS:
        return finding
    return strip(finding)


def _sha1():
    try:
        return hashlib.sha1(usedforsecurity=False)
    except ValueError as e:
        raise FuzzDriverError("SHA-1 not available") from e


def sha1_hex(data: bytes) -> str:
    """Lower-case SHA-1 hex digest of *data*, used to name crash artifacts."""
    digest = _sha1()
    digest.update(data)
    return to_hex_string(digest.digest())


def to_hex_string(data: bytes) -> str:
    """
    Convert bytes to a lower-case hex string.

    The result always has ``2 * len(data)`` characters; leading zero bytes are kept.
    """
    return data.hex()


def _dedup_frames(link: Finding) -> list[Frame]:
    frames = list(link.significant_frames())
    if link.kind == "RecursionError":
        # Recursion depth varies between runs; only the set of frames matters.
        unique: list[Frame] = []
        seen: set[Frame] = set()
        for frame in frames:
            if frame not in seen:
                seen.add(frame)
                unique.append(frame)
        return unique
    if link.kind == "MemoryError":
        return []
    return frames


def compute_dedup_token(finding: Finding) -> int:
    """
    Compute the 64-bit deduplication token of a finding.

    The token is derived from the kind and the significant frames of the finding
    and of every exception in its cause chain. Messages are ignored since they
    often embed object addresses or input-dependent values.
    """
    digest = _sha1()
    for link in finding.chain():
        digest.update(link.kind.encode("utf-8"))
        for frame in _dedup_frames(link):
            digest.update(b"\n")
            digest.update(str(frame).encode("utf-8", errors="backslashreplace"))
        digest.update(b"\0")
    return int.from_bytes(digest.digest()[:8], "big")


def format_dedup_token(token: int) -> str:
    return f"{token:016x}"


def format_finding(finding: Finding) -> str:
    """Render a finding the way the interpreter renders an uncaught exception."""
    exc = finding.exception
    if exc is None:
        return f"{finding.kind}: {finding.message}\n"
    text = "".join(traceback.format_exception(exc))
    if exc.__traceback__ is None and finding.frames:
        lines = ["Reported at (most recent call last):\n"]
        for frame in reversed(finding.frames):
            lines.append(f'  File "{frame.filename}", line {frame.lineno}, in {frame.function}\n')
        text += "".join(lines)
    return text


def print_finding(finding: Finding, file: TextIO | None = None) -> None:
    print(format_finding(finding), end="", file=file if file is not None else sys.stderr)


class DedupFilter:
    """
    Decides which findings are reported under the keep-going budget.

    The ignore set only grows. It is consulted exclusively when more than one
    finding may be collected; with a budget of 1 the first finding is always
    reported and always terminal.
    """

    def __init__(self, keep_going: int = 1, dedup: bool = True, ignore: Iterable[int] = ()) -> None:
        """
        Args:
            keep_going: Number of distinct findings to collect before terminating.
            dedup: Whether to compute dedup tokens at all.
            ignore: Tokens considered already reported from the start.
        """
        if keep_going < 1:
            raise ValueError(f"keep_going must be at least 1, got {keep_going}")
        self.keep_going = keep_going
        self.dedup = dedup or keep_going > 1
        self._ignored: set[int] = set(ignore)

    def __contains__(self, token: int) -> bool:
        return token in self._ignored

    def __len__(self) -> int:
        return len(self._ignored)

    def token_for(self, finding: Finding) -> int:
        """Return the finding's dedup token, or 0 when dedup is disabled."""
        if not self.dedup:
            return 0
        return compute_dedup_token(finding)

    def admit(self, token: int) -> bool:
        """Return False if *token* was already reported; otherwise remember it."""
        if self.keep_going > 1:
            if token in self._ignored:
                return False
            self._ignored.add(token)
        return True

    def exhausted(self) -> bool:
        """True once the budget of distinct findings has been used up."""
        return self.keep_going == 1 or len(self._ignored) >= self.keep_going
