"""
The shutdown sequence: flush coverage sinks, print the run summary and call
the target's ``fuzzer_tear_down``.

Shutdown is reachable from two places: the atexit hook (normal end of fuzzing,
engine-initiated exit) and the runner's terminal-finding path, which calls
``run()`` directly and then exits with ``os._exit``. ``run()`` only does its
work the first time it is called.
"""

from __future__ import annotations

import atexit
import sys
import traceback
from types import TracebackType
from typing import Any, Callable

from fuzzdriver.binding import TEAR_DOWN, FuzzTarget
from fuzzdriver.coverage import CoverageMap, dump_coverage, dump_coverage_report
from fuzzdriver.engine import LIBFUZZER_ERROR_EXIT_CODE, Engine
from fuzzdriver.options import HarnessOptions
from fuzzdriver.stats import RunStats


def _code_of(func: Callable[..., Any]) -> Any:
    code = getattr(func, "__code__", None)
    if code is None:
        code = getattr(getattr(func, "__call__", None), "__code__", None)
    return code


def raised_inside(exc: BaseException, func: Callable[..., Any]) -> bool:
    """True if *exc* propagated out of the body of *func*, not out of the call itself."""
    code = _code_of(func)
    if code is None:
        return False
    tb: TracebackType | None = exc.__traceback__
    while tb is not None:
        if tb.tb_frame.f_code is code:
            return True
        tb = tb.tb_next
    return False


class ShutdownCoordinator:
    def __init__(
        self,
        target: FuzzTarget,
        options: HarnessOptions,
        engine: Engine,
        coverage_map: CoverageMap | None = None,
        stats: RunStats | None = None,
    ) -> None:
        self.target = target
        self.options = options
        self.engine = engine
        self.coverage_map = coverage_map
        self.stats = stats
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def install(self) -> None:
        """Run shutdown when the interpreter exits normally."""
        atexit.register(self.run)

    def run(self) -> None:
        if self._done:
            return
        self._done = True

        self._flush_coverage()
        if self.stats is not None:
            print(self.stats.summary_line(), file=sys.stderr)
        self._tear_down()

    def _flush_coverage(self) -> None:
        if not (self.options.coverage_dump or self.options.coverage_report):
            return
        covered = self.coverage_map.get_ever_covered_ids() if self.coverage_map else []
        if self.options.coverage_dump:
            print(f"[+] Dumping coverage to {self.options.coverage_dump}", file=sys.stderr)
            dump_coverage(covered, self.options.coverage_dump)
        if self.options.coverage_report:
            print(f"[+] Writing coverage report to {self.options.coverage_report}", file=sys.stderr)
            dump_coverage_report(covered, self.options.coverage_report)

    def _tear_down(self) -> None:
        if self.target.tear_down is None:
            return
        print(f"calling {TEAR_DOWN} function", file=sys.stderr)
        try:
            self.target.tear_down()
        except BaseException as e:
            if raised_inside(e, self.target.tear_down):
                print(f"\n== Python Exception in {TEAR_DOWN}: ", file=sys.stderr)
                traceback.print_exception(e, file=sys.stderr)
                self.engine.hard_exit(LIBFUZZER_ERROR_EXIT_CODE)
            else:
                traceback.print_exception(e, file=sys.stderr)
                self.engine.hard_exit(1)
