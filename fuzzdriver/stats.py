"""Run statistics printed when the harness shuts down."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import psutil


@dataclass
class RunStats:
    runs: int = 0
    findings: int = 0
    duplicates: int = 0
    reproducers: int = 0
    start_time: float = field(default_factory=time.monotonic)

    def summary_line(self) -> str:
        elapsed = time.monotonic() - self.start_time
        rss_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
        execs_per_sec = self.runs / elapsed if elapsed > 0 else 0.0
        return (
            f"[+] Done {self.runs} runs in {elapsed:.1f}s ({execs_per_sec:.1f} exec/s), "
            f"{self.findings} findings, {self.duplicates} duplicates suppressed, "
            f"{self.reproducers} reproducers, rss: {rss_mb} MB"
        )
