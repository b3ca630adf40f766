"""
Command-line configuration for the fuzzdriver harness.

Flags that fuzzdriver does not know are collected in ``engine_args`` and
forwarded to libFuzzer untouched (e.g. ``-runs=1000`` or ``-max_len=64``).
"""

from __future__ import annotations

import argparse
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence


@dataclass
class HarnessOptions:
    """Settings fixed for the lifetime of one harness process."""

    target: str
    target_args: list[str] = field(default_factory=list)
    keep_going: int = 1
    dedup: bool = True
    hooks: bool = True
    ignore: frozenset[int] = frozenset()
    reproducer_path: Path | None = Path(".")
    artifact_prefix: str = ""
    coverage_dump: Path | None = None
    coverage_report: Path | None = None
    inputs: list[str] = field(default_factory=list)
    engine_args: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.keep_going < 1:
            raise ValueError(f"--keep-going must be at least 1, got {self.keep_going}")
        # Collecting several distinct findings requires telling them apart.
        if self.keep_going > 1:
            self.dedup = True


def parse_ignore_tokens(value: str) -> frozenset[int]:
    """Parse a comma separated list of hex dedup tokens, e.g. ``00ab12...,ff01...``."""
    tokens = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            tokens.add(int(part, 16))
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid dedup token: {part!r}") from None
    return frozenset(tokens)


def _optional_path(value: str) -> Path | None:
    return Path(value) if value else None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fuzzdriver",
        description="fuzzdriver: run a Python fuzz target under libFuzzer or on fixed inputs.",
        allow_abbrev=False,
    )
    parser.add_argument(
        "target",
        help="The fuzz target: a dotted module name or a path to a .py file.",
    )
    parser.add_argument(
        "inputs",
        nargs="*",
        help="Input files or directories to run once each instead of fuzzing.",
    )
    parser.add_argument(
        "--target-args",
        type=str,
        default="",
        help="Arguments passed to fuzzer_initialize(args), split like a shell command line.",
    )
    parser.add_argument(
        "--keep-going",
        type=int,
        default=1,
        help="Continue fuzzing until N distinct findings have been reported. (Default: 1)",
    )
    parser.add_argument(
        "--dedup",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Compute and print a DEDUP_TOKEN for each finding. Implied by --keep-going > 1.",
    )
    parser.add_argument(
        "--hooks",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Strip hook frames and unwrap injected findings before deduplication.",
    )
    parser.add_argument(
        "--ignore",
        type=parse_ignore_tokens,
        default=frozenset(),
        help="Comma separated dedup tokens of findings to treat as already reported.",
    )
    parser.add_argument(
        "--reproducer-path",
        type=_optional_path,
        default=Path("."),
        help="Directory for crash_<sha1>.py reproducers. An empty value disables them.",
    )
    parser.add_argument(
        "--artifact-prefix",
        type=str,
        default="",
        help="Prefix for crash-<sha1> input files written on a finding.",
    )
    parser.add_argument(
        "--coverage-dump",
        type=_optional_path,
        default=None,
        help="Write the ids covered during the run to this file (pickle) at shutdown.",
    )
    parser.add_argument(
        "--coverage-report",
        type=_optional_path,
        default=None,
        help="Write a plain-text coverage report to this file at shutdown.",
    )
    return parser


def parse_options(argv: Sequence[str] | None = None) -> HarnessOptions:
    """Parse *argv* into HarnessOptions; unknown flags are kept for the engine."""
    parser = build_parser()
    args, extras = parser.parse_known_args(argv)
    if args.keep_going < 1:
        parser.error(f"--keep-going must be at least 1, got {args.keep_going}")
    # Positionals that follow an unknown flag end up in extras. libFuzzer flags
    # always have the -flag=value form, so anything else is an input.
    inputs = list(args.inputs) + [arg for arg in extras if not arg.startswith("-")]
    engine_args = [arg for arg in extras if arg.startswith("-")]
    return HarnessOptions(
        target=args.target,
        target_args=shlex.split(args.target_args),
        keep_going=args.keep_going,
        dedup=args.dedup,
        hooks=args.hooks,
        ignore=args.ignore,
        reproducer_path=args.reproducer_path,
        artifact_prefix=args.artifact_prefix,
        coverage_dump=args.coverage_dump,
        coverage_report=args.coverage_report,
        inputs=inputs,
        engine_args=engine_args,
    )
