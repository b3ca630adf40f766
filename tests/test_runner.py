#!/usr/bin/env python3
"""
Unit tests for fuzzdriver/runner.py

The engine is replaced by a fake whose hard_exit() raises, so that terminal
findings can be observed without ending the test process.
"""

import io
import re
import unittest
from unittest.mock import patch

from fuzzdriver import api, report_finding
from fuzzdriver.binding import FuzzTarget, InvocationMode
from fuzzdriver.findings import InjectedFinding
from fuzzdriver.options import HarnessOptions
from fuzzdriver.runner import FuzzTargetRunner


class HardExit(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.code = code


class FakeEngine:
    def __init__(self):
        self.crashing_inputs = 0

    def run(self, callback):
        return 0

    def print_crashing_input(self):
        self.crashing_inputs += 1

    def hard_exit(self, code):
        raise HardExit(code)


def distinct_crashes(data):
    if data == b"a":
        raise ValueError("a")
    if data == b"b":
        raise KeyError("b")
    if data == b"c":
        raise TypeError("c")
    if data == b"d":
        raise IndexError("d")
    if data == b"e":
        raise ZeroDivisionError("e")


def report_then_raise(data):
    if data == b"report":
        report_finding(KeyError("reported"))
        raise ValueError("thrown")


def injected_crash(data):
    try:
        raise ValueError("underlying")
    except ValueError as e:
        raise InjectedFinding("hook noticed") from e


def exit_from_target(data):
    raise SystemExit(3)


class UnprintableError(Exception):
    def __str__(self):
        raise RuntimeError("str is broken")


def unprintable_crash(data):
    raise UnprintableError()


class TearDownAborted(BaseException):
    pass


def aborting_tear_down():
    raise TearDownAborted("teardown aborted")


def make_runner(func, mode=InvocationMode.RAW_BYTES, **option_overrides):
    options = HarnessOptions(target="test_target", reproducer_path=None, **option_overrides)
    target = FuzzTarget(name="test_target", module_file=None, mode=mode, test_one_input=func)
    return FuzzTargetRunner(target, options, FakeEngine())


class CapturedStreamsMixin:
    def setUp(self):
        stdout_patcher = patch("sys.stdout", new_callable=io.StringIO)
        stderr_patcher = patch("sys.stderr", new_callable=io.StringIO)
        self.stdout = stdout_patcher.start()
        self.stderr = stderr_patcher.start()
        self.addCleanup(stdout_patcher.stop)
        self.addCleanup(stderr_patcher.stop)


class TestOutcomes(CapturedStreamsMixin, unittest.TestCase):
    """Tests for outcome resolution in run_one."""

    def tearDown(self):
        api.install_finding_slot(None)

    def test_clean_iteration_returns_zero(self):
        runner = make_runner(distinct_crashes)
        self.assertEqual(runner.run_one(b"clean"), 0)
        self.assertEqual(self.stdout.getvalue(), "")
        self.assertEqual(runner.engine.crashing_inputs, 0)
        self.assertEqual(runner.stats.runs, 1)

    def test_first_finding_is_terminal_by_default(self):
        runner = make_runner(distinct_crashes)
        with self.assertRaises(HardExit) as ctx:
            runner.run_one(b"a")
        self.assertEqual(ctx.exception.code, 77)
        err = self.stderr.getvalue()
        self.assertIn("== Python Exception: ", err)
        self.assertIn("ValueError: a", err)
        self.assertIn("== libFuzzer crashing input ==", err)
        self.assertRegex(self.stdout.getvalue(), r"^DEDUP_TOKEN: [0-9a-f]{16}\n$")
        self.assertEqual(runner.engine.crashing_inputs, 1)
        self.assertTrue(runner.shutdown.done)

    def test_explicit_report_overrides_thrown(self):
        runner = make_runner(report_then_raise, keep_going=2)
        api.install_finding_slot(runner.slot)

        self.assertEqual(runner.run_one(b"report"), 0)
        err = self.stderr.getvalue()
        self.assertIn("KeyError: 'reported'", err)
        self.assertNotIn("ValueError: thrown", err)

        # The report does not leak into the next iteration.
        self.assertEqual(runner.run_one(b"clean"), 0)
        self.assertIsNone(runner.slot.peek())
        self.assertEqual(runner.stats.findings, 1)

    def test_report_without_raise_is_a_finding(self):
        def report_only(data):
            report_finding(RuntimeError("silent problem"))

        runner = make_runner(report_only)
        api.install_finding_slot(runner.slot)
        with self.assertRaises(HardExit):
            runner.run_one(b"x")
        self.assertIn("RuntimeError: silent problem", self.stderr.getvalue())

    def test_unprintable_exception_is_a_finding(self):
        runner = make_runner(unprintable_crash)
        with self.assertRaises(HardExit) as ctx:
            runner.run_one(b"x")
        self.assertEqual(ctx.exception.code, 77)
        self.assertIn("UnprintableError", self.stderr.getvalue())
        self.assertRegex(self.stdout.getvalue(), r"^DEDUP_TOKEN: [0-9a-f]{16}\n$")

    def test_teardown_base_exception_on_terminal_finding(self):
        runner = make_runner(distinct_crashes)
        runner.target.tear_down = aborting_tear_down
        with self.assertRaises(HardExit) as ctx:
            runner.run_one(b"a")
        self.assertEqual(ctx.exception.code, 77)
        self.assertIn("== Python Exception in fuzzer_tear_down: ", self.stderr.getvalue())

    def test_system_exit_propagates(self):
        runner = make_runner(exit_from_target)
        with self.assertRaises(SystemExit):
            runner.run_one(b"x")

    def test_provider_mode_refeeds_singleton(self):
        seen = []

        def consume(fdp):
            seen.append((fdp, fdp.ConsumeBytes(3)))

        runner = make_runner(consume, mode=InvocationMode.PROVIDER)
        runner.run_one(b"abc")
        runner.run_one(b"xyz")
        self.assertIs(seen[0][0], runner.provider)
        self.assertIs(seen[1][0], runner.provider)
        self.assertEqual([value for _, value in seen], [b"abc", b"xyz"])


class TestKeepGoing(CapturedStreamsMixin, unittest.TestCase):
    """Tests for deduplication and the keep-going budget."""

    def test_budget_of_three_exits_on_third_distinct(self):
        runner = make_runner(distinct_crashes, keep_going=3)
        self.assertEqual(runner.run_one(b"a"), 0)
        self.assertEqual(runner.run_one(b"b"), 0)
        with self.assertRaises(HardExit) as ctx:
            runner.run_one(b"c")
        self.assertEqual(ctx.exception.code, 77)
        self.assertEqual(self.stdout.getvalue().count("DEDUP_TOKEN: "), 3)
        self.assertEqual(self.stderr.getvalue().count("== Python Exception: "), 3)

    def test_two_distinct_never_exhaust_budget_of_three(self):
        runner = make_runner(distinct_crashes, keep_going=3)
        for data in (b"a", b"b", b"a", b"b", b"a"):
            self.assertEqual(runner.run_one(data), 0)
        self.assertEqual(runner.stats.findings, 2)
        self.assertEqual(runner.stats.duplicates, 3)
        self.assertFalse(runner.shutdown.done)

    def test_duplicate_is_silent(self):
        runner = make_runner(distinct_crashes, keep_going=2)
        runner.run_one(b"a")
        out, err = self.stdout.getvalue(), self.stderr.getvalue()
        runner.run_one(b"a")
        self.assertEqual(self.stdout.getvalue(), out)
        self.assertEqual(self.stderr.getvalue(), err)
        self.assertEqual(runner.engine.crashing_inputs, 1)

    def test_tokens_are_stable_across_runners(self):
        """Test that --ignore with a previously printed token suppresses the finding."""
        first = make_runner(distinct_crashes, keep_going=2)
        first.run_one(b"d")
        token = int(re.search(r"DEDUP_TOKEN: ([0-9a-f]{16})", self.stdout.getvalue()).group(1), 16)

        second = make_runner(distinct_crashes, keep_going=2, ignore=frozenset({token}))
        before = self.stderr.getvalue()
        self.assertEqual(second.run_one(b"d"), 0)
        self.assertEqual(second.stats.duplicates, 1)
        self.assertEqual(self.stderr.getvalue(), before)

    def test_dedup_disabled_prints_no_token(self):
        runner = make_runner(distinct_crashes, dedup=False)
        with self.assertRaises(HardExit):
            runner.run_one(b"e")
        self.assertEqual(self.stdout.getvalue(), "")
        self.assertIn("ZeroDivisionError", self.stderr.getvalue())

    def test_budget_one_leaves_ignore_set_empty(self):
        """Test that with a budget of 1 the ignore set is left untouched."""
        runner = make_runner(distinct_crashes)
        with self.assertRaises(HardExit):
            runner.run_one(b"a")
        self.assertEqual(len(runner.dedup), 0)


class TestNormalization(CapturedStreamsMixin, unittest.TestCase):
    """Tests for the --hooks switch."""

    def test_hooks_unwrap_injected_finding(self):
        runner = make_runner(injected_crash)
        with self.assertRaises(HardExit):
            runner.run_one(b"x")
        err = self.stderr.getvalue()
        self.assertIn("ValueError: underlying", err)
        self.assertNotIn("InjectedFinding", err)

    def test_no_hooks_reports_wrapper(self):
        runner = make_runner(injected_crash, hooks=False)
        with self.assertRaises(HardExit):
            runner.run_one(b"x")
        self.assertIn("InjectedFinding: hook noticed", self.stderr.getvalue())

    def test_custom_normalizer_is_used(self):
        calls = []

        def normalizer(finding):
            calls.append(finding.kind)
            return finding

        options = HarnessOptions(target="t", reproducer_path=None)
        target = FuzzTarget("t", None, InvocationMode.RAW_BYTES, distinct_crashes)
        runner = FuzzTargetRunner(target, options, FakeEngine(), normalizer=normalizer)
        with self.assertRaises(HardExit):
            runner.run_one(b"b")
        self.assertEqual(calls, ["KeyError"])


if __name__ == "__main__":
    unittest.main(verbosity=2)
