"""
Coverage bookkeeping and the coverage sinks flushed at shutdown.

The engine (or an instrumentation layer) records the ids of the coverage
features it observes into a CoverageMap. At shutdown the ever-covered set can
be dumped as a pickle for later merging, and/or as a human-readable report.
"""

from __future__ import annotations

import os
import pickle
import secrets
import sys
import zlib
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import FrameType
from typing import Any, Iterable, Iterator


def line_id(filename: str, lineno: int) -> int:
    """Stable id of a source line, independent of the process and hash seed."""
    return zlib.crc32(f"{os.path.basename(filename)}:{lineno}".encode("utf-8", "backslashreplace"))


class CoverageMap:
    """The set of coverage ids seen at least once during this process."""

    def __init__(self) -> None:
        self._covered: set[int] = set()

    def record(self, ids: Iterable[int]) -> int:
        """Add *ids* to the map and return how many of them were new."""
        before = len(self._covered)
        self._covered.update(ids)
        return len(self._covered) - before

    def get_ever_covered_ids(self) -> list[int]:
        return sorted(self._covered)

    def __len__(self) -> int:
        return len(self._covered)

    @contextmanager
    def tracing(self, exclude_dir: str | None = None) -> Iterator[None]:
        """
        Record the lines executed by the current thread while the block runs.

        Used when no engine-provided coverage is available. Files below
        *exclude_dir* are not traced.
        """
        covered = self._covered
        previous = sys.gettrace()

        def tracer(frame: FrameType, event: str, arg: Any) -> Any:
            filename = frame.f_code.co_filename
            if exclude_dir and filename.startswith(exclude_dir + os.sep):
                return None
            if event == "line":
                covered.add(line_id(filename, frame.f_lineno))
            return tracer

        sys.settrace(tracer)
        try:
            yield
        finally:
            sys.settrace(previous)


def dump_coverage(covered_ids: Iterable[int], path: Path) -> None:
    """
    Save the covered ids to *path* as a pickle, atomically.

    The state is first written to a temporary file in the same directory and
    then renamed over *path*, so readers never observe a partial dump.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(4)}")
    state = {
        "covered_ids": sorted(covered_ids),
        "written_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        with open(tmp_path, "wb") as f:
            pickle.dump(state, f)
        os.rename(tmp_path, path)
    except (OSError, pickle.PicklingError) as e:
        print(f"[!] Error during atomic save of coverage dump: {e}", file=sys.stderr)
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as e_unlink:
                print(
                    f"[!] Warning: Could not remove temporary coverage file {tmp_path}: {e_unlink}",
                    file=sys.stderr,
                )


def load_coverage(path: Path) -> set[int]:
    """Load the ids written by dump_coverage(); a missing file yields an empty set."""
    path = Path(path)
    if not path.is_file():
        return set()
    with open(path, "rb") as f:
        state = pickle.load(f)
    return set(state.get("covered_ids", []))


def dump_coverage_report(covered_ids: Iterable[int], path: Path) -> None:
    """Write a plain-text summary of the covered ids to *path*."""
    ids = sorted(covered_ids)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "fuzzdriver coverage report",
        f"generated: {datetime.now(timezone.utc).isoformat()}",
        f"covered ids: {len(ids)}",
        "",
    ]
    lines.extend(str(i) for i in ids)
    try:
        path.write_text("\n".join(lines) + "\n")
    except OSError as e:
        print(f"[!] Error writing coverage report to {path}: {e}", file=sys.stderr)
