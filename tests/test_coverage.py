#!/usr/bin/env python3
"""
Unit tests for fuzzdriver/coverage.py
"""

import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fuzzdriver.coverage import (
    CoverageMap,
    dump_coverage,
    dump_coverage_report,
    line_id,
    load_coverage,
)


def traced_function():
    value = 1
    return value + 1


class TestCoverageMap(unittest.TestCase):
    """Tests for CoverageMap bookkeeping and line tracing."""

    def test_record_counts_new_ids(self):
        coverage_map = CoverageMap()
        self.assertEqual(coverage_map.record([3, 1]), 2)
        self.assertEqual(coverage_map.record([1, 2]), 1)
        self.assertEqual(coverage_map.get_ever_covered_ids(), [1, 2, 3])
        self.assertEqual(len(coverage_map), 3)

    def test_tracing_records_executed_lines(self):
        coverage_map = CoverageMap()
        with coverage_map.tracing():
            traced_function()
        first_body_line = traced_function.__code__.co_firstlineno + 1
        self.assertIn(line_id(__file__, first_body_line), coverage_map.get_ever_covered_ids())

    def test_tracing_excludes_directory(self):
        coverage_map = CoverageMap()
        with coverage_map.tracing(exclude_dir=os.path.dirname(os.path.abspath(__file__))):
            traced_function()
        first_body_line = traced_function.__code__.co_firstlineno + 1
        self.assertNotIn(line_id(__file__, first_body_line), coverage_map.get_ever_covered_ids())

    def test_tracing_keeps_sibling_directory_with_shared_prefix(self):
        tests_dir = os.path.dirname(os.path.abspath(__file__))
        coverage_map = CoverageMap()
        # "<root>/test" is a prefix of "<root>/tests" but a different directory.
        with coverage_map.tracing(exclude_dir=tests_dir[:-1]):
            traced_function()
        first_body_line = traced_function.__code__.co_firstlineno + 1
        self.assertIn(line_id(__file__, first_body_line), coverage_map.get_ever_covered_ids())

    def test_line_id_is_stable(self):
        self.assertEqual(line_id("/a/target.py", 3), line_id("/b/target.py", 3))
        self.assertNotEqual(line_id("/a/target.py", 3), line_id("/a/target.py", 4))


class TestCoverageSinks(unittest.TestCase):
    """Tests for dump_coverage, load_coverage and dump_coverage_report."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.temp_path = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_dump_and_load(self):
        path = self.temp_path / "out" / "coverage.pkl"
        dump_coverage([5, 4, 4], path)
        self.assertEqual(load_coverage(path), {4, 5})
        self.assertEqual([p.name for p in path.parent.iterdir()], ["coverage.pkl"])

    def test_load_missing_file(self):
        self.assertEqual(load_coverage(self.temp_path / "absent.pkl"), set())

    def test_dump_failure_is_reported(self):
        path = self.temp_path / "coverage.pkl"
        with patch("fuzzdriver.coverage.os.rename", side_effect=OSError("read-only")):
            with patch("sys.stderr", new_callable=io.StringIO) as err:
                dump_coverage([1], path)
        self.assertIn("Error during atomic save of coverage dump", err.getvalue())
        self.assertEqual(list(self.temp_path.iterdir()), [])

    def test_report(self):
        path = self.temp_path / "coverage.txt"
        dump_coverage_report([9, 7, 8], path)
        text = path.read_text()
        self.assertIn("covered ids: 3", text)
        self.assertTrue(text.endswith("7\n8\n9\n"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
