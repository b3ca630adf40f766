"""
The boundary between fuzzdriver and the engine that produces inputs.

An engine owns the main loop: it generates or loads inputs and hands each one
to the runner's callback. When a finding is reported the runner asks the
engine to persist the crashing input, and on a terminal finding to exit the
process without running interpreter cleanup.

Two engines are provided:
- ReplayEngine runs a fixed list of input files (corpus replay, regression).
- AtherisEngine drives libFuzzer through atheris (optional dependency).
"""

from __future__ import annotations

import base64
import os
import sys
import time
from pathlib import Path
from typing import Callable, Iterator, Protocol, Sequence

from fuzzdriver.errors import FuzzDriverError
from fuzzdriver.findings import sha1_hex

LIBFUZZER_ERROR_EXIT_CODE = 77

# libFuzzer only prints a Base64 line for small inputs.
MAX_BASE64_PRINT_LEN = 64

Callback = Callable[[bytes], int]


def hard_exit(code: int) -> None:
    """Flush the standard streams and terminate without running atexit hooks."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    os._exit(code)


def write_crash_input(data: bytes, artifact_prefix: str = "") -> Path | None:
    """
    Persist a crashing input as ``<artifact_prefix>crash-<sha1>``.

    Returns:
        The path written, or None if the file could not be created.
    """
    path = Path(f"{artifact_prefix}crash-{sha1_hex(data)}")
    try:
        if path.parent != Path("."):
            path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        print(f"[!] Failed to write crashing input to {path}: {e}", file=sys.stderr)
        return None
    print(f"artifact_prefix='{artifact_prefix}'; Test unit written to {path}", file=sys.stderr)
    if len(data) <= MAX_BASE64_PRINT_LEN:
        print(f"Base64: {base64.b64encode(data).decode('ascii')}", file=sys.stderr)
    return path


class Engine(Protocol):
    def run(self, callback: Callback) -> int: ...

    def print_crashing_input(self) -> None: ...

    def hard_exit(self, code: int) -> None: ...


class _EngineBase:
    """Tracks the input currently being executed."""

    def __init__(self, artifact_prefix: str = "") -> None:
        self.artifact_prefix = artifact_prefix
        self.current_input: bytes | None = None

    def _execute(self, callback: Callback, data: bytes) -> int:
        self.current_input = data
        return callback(data)

    def print_crashing_input(self) -> None:
        if self.current_input is None:
            print("[!] No input is being executed.", file=sys.stderr)
            return
        try:
            write_crash_input(self.current_input, self.artifact_prefix)
        except FuzzDriverError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            self.hard_exit(1)

    def hard_exit(self, code: int) -> None:
        hard_exit(code)


def iter_input_files(inputs: Sequence[str | Path]) -> Iterator[Path]:
    """Expand *inputs* into files; directories contribute their files in sorted order."""
    for entry in inputs:
        path = Path(entry)
        if path.is_dir():
            yield from sorted(p for p in path.iterdir() if p.is_file())
        else:
            yield path


class ReplayEngine(_EngineBase):
    """Runs each given input file once, in order."""

    def __init__(self, inputs: Sequence[str | Path], artifact_prefix: str = "") -> None:
        super().__init__(artifact_prefix)
        self.inputs = list(inputs)

    def run(self, callback: Callback) -> int:
        files = list(iter_input_files(self.inputs))
        print(f"[+] Running {len(files)} inputs 1 time(s) each.", file=sys.stderr)
        for path in files:
            try:
                data = path.read_bytes()
            except OSError as e:
                print(f"[!] Could not read input {path}: {e}", file=sys.stderr)
                return 1
            print(f"Running: {path}", file=sys.stderr)
            start = time.monotonic()
            self._execute(callback, data)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            print(f"Executed {path} in {elapsed_ms} ms", file=sys.stderr)
        print("*** NOTE: fuzzing was not performed, you have only", file=sys.stderr)
        print("***       executed the target code on a fixed set of inputs.", file=sys.stderr)
        return 0


class AtherisEngine(_EngineBase):
    """Drives libFuzzer through atheris; *argv* is forwarded to libFuzzer."""

    def __init__(self, argv: Sequence[str], artifact_prefix: str = "") -> None:
        super().__init__(artifact_prefix)
        self.argv = list(argv)

    def run(self, callback: Callback) -> int:
        try:
            import atheris
        except ImportError:
            print("-" * 80, file=sys.stderr)
            print("ERROR: Missing required dependency for fuzzing:", file=sys.stderr)
            print("  - atheris", file=sys.stderr)
            print("", file=sys.stderr)
            print("Install with: pip install 'fuzzdriver[atheris]'", file=sys.stderr)
            print("Or pass input files to replay them without libFuzzer.", file=sys.stderr)
            print("-" * 80, file=sys.stderr)
            return 1

        def test_one_input(data: bytes) -> None:
            self._execute(callback, data)

        atheris.Setup(self.argv, test_one_input)
        atheris.Fuzz()
        return 0
