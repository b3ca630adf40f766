"""
Per-iteration execution of a fuzz target.

FuzzTargetRunner.run_one() is the callback the engine invokes with every input.
It runs the target, turns whatever the target raised (or reported through
``fuzzdriver.report_finding``) into a Finding, filters duplicates, reports new
findings in the libFuzzer format, writes the crashing input and a reproducer,
and decides whether the run is over.
"""

from __future__ import annotations

import sys
from typing import Callable

from fuzzdriver import api
from fuzzdriver.binding import FuzzTarget
from fuzzdriver.coverage import CoverageMap
from fuzzdriver.engine import LIBFUZZER_ERROR_EXIT_CODE, Engine
from fuzzdriver.errors import FuzzDriverError
from fuzzdriver.findings import (
    HARNESS_DIR,
    DedupFilter,
    Finding,
    FindingSlot,
    format_dedup_token,
    normalize_finding,
    print_finding,
)
from fuzzdriver.options import HarnessOptions
from fuzzdriver.provider import FuzzedDataProvider
from fuzzdriver.reproducer import ReproducerGenerator
from fuzzdriver.shutdown import ShutdownCoordinator
from fuzzdriver.stats import RunStats


class FuzzTargetRunner:
    """
    Owns the harness state shared by all iterations of one process.

    The invocation mode, the provider singleton and the finding slot are fixed
    at construction. The ignore set inside the DedupFilter only ever grows.
    """

    def __init__(
        self,
        target: FuzzTarget,
        options: HarnessOptions,
        engine: Engine,
        *,
        slot: FindingSlot | None = None,
        coverage_map: CoverageMap | None = None,
        normalizer: Callable[[Finding], Finding] = normalize_finding,
        stats: RunStats | None = None,
    ) -> None:
        self.target = target
        self.options = options
        self.engine = engine
        self.slot = slot if slot is not None else FindingSlot()
        self.coverage_map = coverage_map if coverage_map is not None else CoverageMap()
        self.normalizer = normalizer
        self.stats = stats if stats is not None else RunStats()
        self.dedup = DedupFilter(options.keep_going, options.dedup, options.ignore)
        self.provider = FuzzedDataProvider()
        # Without an engine-provided coverage feed, trace lines only when a sink wants them.
        self._trace_coverage = bool(options.coverage_dump or options.coverage_report)
        self.shutdown = ShutdownCoordinator(
            target, options, engine, self.coverage_map, self.stats
        )
        self.reproducer = ReproducerGenerator(
            target, options, self.provider, self.slot, engine, self.stats
        )

    def install(self) -> None:
        """Route report_finding() to this runner and register the exit hook."""
        api.install_finding_slot(self.slot)
        self.shutdown.install()

    def _invoke(self, data: bytes) -> BaseException | None:
        try:
            if self._trace_coverage:
                with self.coverage_map.tracing(exclude_dir=HARNESS_DIR):
                    self._call_target(data)
            else:
                self._call_target(data)
        except (KeyboardInterrupt, SystemExit):
            raise
        except BaseException as e:
            return e
        return None

    def _call_target(self, data: bytes) -> None:
        if self.target.uses_provider:
            self.provider.feed(data)
            self.target.test_one_input(self.provider)
        else:
            self.target.test_one_input(data)

    def run_one(self, data: bytes) -> int:
        """
        Execute the target on one input.

        Returns:
            0 when the engine should continue. On a finding that exhausts the
            keep-going budget the process exits with 77 instead of returning.
        """
        self.stats.runs += 1
        thrown = self._invoke(data)

        # An explicit report overrides whatever the target raised.
        finding = self.slot.take()
        if finding is None and thrown is not None:
            finding = Finding.from_exception(thrown)
        if finding is None:
            return 0

        if self.options.hooks:
            finding = self.normalizer(finding)

        try:
            token = self.dedup.token_for(finding)
        except FuzzDriverError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            self.engine.hard_exit(1)
            return 0

        if not self.dedup.admit(token):
            self.stats.duplicates += 1
            return 0
        self.stats.findings += 1

        print(file=sys.stderr)
        print("== Python Exception: ", end="", file=sys.stderr)
        print_finding(finding, file=sys.stderr)
        sys.stderr.flush()
        if self.dedup.dedup:
            print(f"DEDUP_TOKEN: {format_dedup_token(token)}", file=sys.stdout)
            sys.stdout.flush()

        print("== libFuzzer crashing input ==", file=sys.stderr)
        self.engine.print_crashing_input()
        self.reproducer.dump_reproducer(None if self.target.uses_provider else data)

        if self.dedup.exhausted():
            self.shutdown.run()
            self.engine.hard_exit(LIBFUZZER_ERROR_EXIT_CODE)
        return 0
