"""
Tests for the utils module (snaploop/utils.py).

This module tests utility functions including timestamp helpers, log_line,
save_json, TeeLogger, and ExecutionResult.
"""

import json
import tempfile
import threading
import unittest
from io import StringIO
from pathlib import Path
from unittest.mock import MagicMock, patch

from snaploop.utils import (
    ExecutionResult,
    TeeLogger,
    log_line,
    safe_timestamp,
    save_json,
    utc_timestamp,
)


class TestTimestamps(unittest.TestCase):
    def test_utc_timestamp_is_iso_with_offset(self):
        self.assertRegex(utc_timestamp(), r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}\+00:00$")

    def test_safe_timestamp_has_no_colons(self):
        self.assertEqual(
            safe_timestamp("2026-01-02T03:04:05+00:00"), "2026-01-02T03-04-05Z00-00"
        )


class TestLogLine(unittest.TestCase):
    def test_format(self):
        stream = StringIO()
        with patch("snaploop.utils.utc_timestamp", return_value="NOW"):
            log_line(2, 7, "start (see /x)", file=stream)
        self.assertEqual(stream.getvalue(), "NOW: thread 2: attempt 7: start (see /x)\n")

    def test_is_a_single_write(self):
        """Concurrent workers cannot split each other's lines."""
        stream = MagicMock()
        log_line(0, 0, "passed (1 ms)", file=stream)
        self.assertEqual(stream.write.call_count, 1)


class TestSaveJson(unittest.TestCase):
    def test_saves_sorted_json(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = Path(tmp_dir) / "report.json"
            save_json(path, {"b": 1, "a": Path("/x")})
            self.assertEqual(json.loads(path.read_text()), {"a": "/x", "b": 1})

    def test_io_error_warns(self):
        with patch("sys.stderr", new_callable=StringIO) as mock_stderr:
            save_json(Path("/nonexistent/dir/report.json"), {})
        self.assertIn("Could not save", mock_stderr.getvalue())


class TestTeeLogger(unittest.TestCase):
    """Tests for TeeLogger class."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.log_path = Path(self.tmp_dir.name) / "test.log"
        self.stream = StringIO()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_writes_to_both_streams(self):
        logger = TeeLogger(self.log_path, self.stream)
        logger.write("Hello, World!")
        logger.close()

        self.assertIn("Hello, World!", self.stream.getvalue())
        self.assertIn("Hello, World!", self.log_path.read_text())

    def test_flushes_both_streams(self):
        original_stream = MagicMock()
        logger = TeeLogger(self.log_path, original_stream)
        logger.flush()
        original_stream.flush.assert_called()
        logger.close()

    def test_close_closes_log_file(self):
        logger = TeeLogger(self.log_path, self.stream)
        logger.close()
        self.assertTrue(logger.log_file.closed)

    def test_quiet_mode_suppresses_attempt_detail(self):
        logger = TeeLogger(self.log_path, self.stream, verbose=False)
        with patch("sys.stdout", logger):
            log_line(0, 0, "start (see /c/test_run_stdout)")
            log_line(0, 0, "passed (10 ms)")
            log_line(0, 1, "FAILED: exited with code 1 (kept rpool/w/c at /c)")
            print("[+] Created working dataset")
        logger.close()

        output = self.stream.getvalue()
        self.assertNotIn("start (see", output)
        self.assertNotIn("passed (", output)
        self.assertIn("FAILED: exited with code 1", output)
        self.assertIn("[+] Created working dataset\n", output)
        self.assertEqual(output, self.log_path.read_text())

    def test_quiet_mode_swallows_print_newline_of_suppressed_line(self):
        logger = TeeLogger(self.log_path, self.stream, verbose=False)
        with patch("sys.stdout", logger):
            print("thread 0: attempt 2: passed (15 ms)")
            print("kept")
        logger.close()
        self.assertEqual(self.stream.getvalue(), "kept\n")

    def test_verbose_mode_keeps_everything(self):
        logger = TeeLogger(self.log_path, self.stream, verbose=True)
        with patch("sys.stdout", logger):
            log_line(0, 0, "start (see /c/test_run_stdout)")
        logger.close()
        self.assertIn("start (see", self.stream.getvalue())

    def test_concurrent_lines_stay_whole(self):
        logger = TeeLogger(self.log_path, self.stream)

        def worker(worker_id):
            for attempt in range(100):
                log_line(worker_id, attempt, "passed (1 ms)", file=logger)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        logger.close()

        lines = self.stream.getvalue().splitlines()
        self.assertEqual(len(lines), 400)
        for line in lines:
            self.assertRegex(line, r": thread \d: attempt \d+: passed \(1 ms\)$")

    def test_encoding_follows_original_stream(self):
        stream = MagicMock()
        stream.encoding = "latin-1"
        logger = TeeLogger(self.log_path, stream)
        self.assertEqual(logger.encoding, "latin-1")
        logger.close()

    def test_isatty_false_for_string_stream(self):
        logger = TeeLogger(self.log_path, self.stream)
        self.assertFalse(logger.isatty())
        logger.close()

    def test_fileno_without_descriptor(self):
        logger = TeeLogger(self.log_path, object())
        with self.assertRaises(OSError):
            logger.fileno()
        logger.log_file.close()


class TestExecutionResult(unittest.TestCase):
    def make(self, returncode):
        return ExecutionResult(returncode, Path("/o"), Path("/e"), 0)

    def test_only_zero_passes(self):
        self.assertTrue(self.make(0).passed)
        self.assertFalse(self.make(1).passed)
        self.assertFalse(self.make(-11).passed)
        self.assertFalse(self.make(255).passed)


if __name__ == "__main__":
    unittest.main()
