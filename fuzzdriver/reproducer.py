"""
Standalone reproducer scripts for findings.

For every reported finding a ``crash_<sha1>.py`` script is written next to the
crashing input. The script imports only the fuzz target (and, for provider
targets, CannedFuzzedDataProvider), replays the exact input the target saw and
lets the failure propagate, so it can be attached to a bug report or turned
into a regression test without a fuzzing engine.
"""

from __future__ import annotations

import base64
import sys
import traceback
from pathlib import Path
from textwrap import dedent

from fuzzdriver.binding import FuzzTarget
from fuzzdriver.engine import Engine
from fuzzdriver.errors import FuzzDriverError, ReproducerError
from fuzzdriver.findings import FindingSlot, sha1_hex
from fuzzdriver.options import HarnessOptions
from fuzzdriver.provider import FuzzedDataProvider, RecordingFuzzedDataProvider
from fuzzdriver.stats import RunStats

# Width of each base64 line embedded in a reproducer.
PAYLOAD_LINE_WIDTH = 76

REPRODUCER_TEMPLATE = dedent('''\
    #!/usr/bin/env python3
    # Reproducer generated by fuzzdriver.
    # Target: {target_name}
    # Input SHA-1: {data_sha1}
    # Invocation mode: {mode}

    import base64
    import importlib
    import importlib.util
    import inspect
    import sys
    from pathlib import Path

    TARGET_NAME = {target_name!r}
    TARGET_FILE = {target_file!r}
    TARGET_ARGS = {target_args!r}
    MODE = {mode!r}
    PAYLOAD = (
        {payload_lines}
    )


    def load_target():
        if TARGET_FILE and Path(TARGET_FILE).is_file():
            path = Path(TARGET_FILE)
            sys.path.insert(0, str(path.parent))
            spec = importlib.util.spec_from_file_location(path.stem, path)
            module = importlib.util.module_from_spec(spec)
            sys.modules[path.stem] = module
            spec.loader.exec_module(module)
            return module
        return importlib.import_module(TARGET_NAME)


    def main():
        target = load_target()
        initialize = getattr(target, "fuzzer_initialize", None)
        if initialize is not None:
            if inspect.signature(initialize).parameters:
                initialize(list(TARGET_ARGS))
            else:
                initialize()
        if MODE == "provider":
            from fuzzdriver.provider import CannedFuzzedDataProvider

            target.fuzzer_test_one_input(CannedFuzzedDataProvider.from_serialized(PAYLOAD))
        else:
            target.fuzzer_test_one_input(base64.b64decode(PAYLOAD))
        print("No exception raised; the finding did not reproduce.", file=sys.stderr)


    if __name__ == "__main__":
        main()
''')


def format_payload_lines(payload: str) -> str:
    """Split *payload* into quoted chunks suitable for implicit concatenation."""
    if not payload:
        return '""'
    chunks = [
        repr(payload[i : i + PAYLOAD_LINE_WIDTH]) for i in range(0, len(payload), PAYLOAD_LINE_WIDTH)
    ]
    return "\n    ".join(chunks)


class ReproducerTemplate:
    """Renders and writes reproducer scripts for one bound target."""

    def __init__(self, target: FuzzTarget, options: HarnessOptions) -> None:
        self.target = target
        self.options = options

    def render(self, payload: str, data_sha1: str) -> str:
        return REPRODUCER_TEMPLATE.format(
            target_name=self.target.name,
            target_file=self.target.module_file,
            target_args=list(self.options.target_args),
            mode=self.target.mode.value,
            data_sha1=data_sha1,
            payload_lines=format_payload_lines(payload),
        )

    def dump_reproducer(self, payload: str, data_sha1: str) -> Path | None:
        """Write ``crash_<sha1>.py`` below the reproducer path and return its path."""
        if self.options.reproducer_path is None:
            return None
        path = Path(self.options.reproducer_path) / f"crash_{data_sha1}.py"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.render(payload, data_sha1))
        except OSError as e:
            print(f"[!] Failed to write reproducer {path}: {e}", file=sys.stderr)
            return None
        print(f"[+] Reproducer written to {path}", file=sys.stderr)
        return path


class ReproducerGenerator:
    """
    Produces the reproducer for the finding of the current iteration.

    Generation happens after the finding was reported. It never touches the
    ignore set; the only state it changes is the provider cursor and the
    finding slot, both of which are reset before the next iteration anyway.
    """

    def __init__(
        self,
        target: FuzzTarget,
        options: HarnessOptions,
        provider: FuzzedDataProvider,
        slot: FindingSlot,
        engine: Engine,
        stats: RunStats | None = None,
    ) -> None:
        self.target = target
        self.options = options
        self.provider = provider
        self.slot = slot
        self.engine = engine
        self.stats = stats
        self.template = ReproducerTemplate(target, options)

    def dump_reproducer(self, data: bytes | None = None) -> None:
        """
        Write a reproducer for the current input.

        Args:
            data: The raw input in raw-bytes mode. Ignored in provider mode,
                where the bytes are re-derived from the provider.
        """
        if self.options.reproducer_path is None:
            return

        if self.target.uses_provider or data is None:
            self.provider.reset()
            data = self.provider.ConsumeRemainingAsBytes()
        else:
            self.provider.feed(data)

        try:
            data_sha1 = sha1_hex(data)
        except FuzzDriverError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            self.engine.hard_exit(1)
            return

        if self.target.dump_reproducer is not None:
            self.provider.reset()
            try:
                self.target.dump_reproducer(
                    self.provider, str(self.options.reproducer_path), data_sha1
                )
            except Exception:
                print("ERROR: fuzzer_dump_reproducer failed:", file=sys.stderr)
                traceback.print_exc()
                self.engine.hard_exit(1)
                return
            self._count()
            return

        if self.target.uses_provider:
            payload = self._record_provider_run()
            if payload is None:
                return
        else:
            payload = base64.b64encode(data).decode("ascii")

        if self.template.dump_reproducer(payload, data_sha1) is not None:
            self._count()

    def _record_provider_run(self) -> str | None:
        self.provider.reset()
        recorder = RecordingFuzzedDataProvider(self.provider)
        thrown = None
        try:
            self.target.test_one_input(recorder)
        except (KeyboardInterrupt, SystemExit):
            raise
        except BaseException as e:
            thrown = e
        reported = self.slot.take()
        if thrown is None and reported is None:
            print("Failed to reproduce crash when rerunning with recorder", file=sys.stderr)

        try:
            return recorder.serialize()
        except ReproducerError:
            print("ERROR: Failed to create reproducer:", file=sys.stderr)
            traceback.print_exc()
            self.engine.hard_exit(1)
            return None

    def _count(self) -> None:
        if self.stats is not None:
            self.stats.reproducers += 1
