"""
Tests for the metadata module (snaploop/metadata.py).

This module tests git info retrieval, hardware description, and the
generate_run_metadata function.
"""

import io
import json
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from snaploop.metadata import METADATA_FILE, generate_run_metadata, get_git_info, get_hardware_info


class TestGetGitInfo(unittest.TestCase):
    """Tests for git info retrieval."""

    @patch("snaploop.metadata.subprocess.run")
    def test_returns_commit_and_dirty_status(self, mock_run):
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout="abc123def456\n"),
            MagicMock(returncode=0, stdout=""),  # Not dirty
        ]

        info = get_git_info()

        self.assertEqual(info["commit"], "abc123def456")
        self.assertFalse(info["dirty"])

    @patch("snaploop.metadata.subprocess.run")
    def test_dirty_status_when_uncommitted_changes(self, mock_run):
        mock_run.side_effect = [
            MagicMock(returncode=0, stdout="abc123\n"),
            MagicMock(returncode=0, stdout=" M snaploop/cli.py\n"),
        ]

        self.assertTrue(get_git_info()["dirty"])

    @patch("snaploop.metadata.subprocess.run")
    def test_handles_git_failure(self, mock_run):
        mock_run.side_effect = [
            MagicMock(returncode=128, stdout="", stderr="not a git repository"),
            MagicMock(returncode=128, stdout="", stderr="not a git repository"),
        ]

        self.assertEqual(get_git_info(), {"commit": "unknown", "dirty": False})

    @patch("snaploop.metadata.subprocess.run")
    def test_handles_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="git", timeout=5)
        self.assertEqual(get_git_info(), {"commit": "unknown", "dirty": False})

    @patch("snaploop.metadata.subprocess.run")
    def test_handles_file_not_found(self, mock_run):
        """Test handling when git is not installed."""
        mock_run.side_effect = FileNotFoundError("git not found")
        self.assertEqual(get_git_info()["commit"], "unknown")


class TestGetHardwareInfo(unittest.TestCase):
    @patch("snaploop.metadata.psutil.getloadavg", return_value=(1.5, 1.0, 0.5))
    @patch("snaploop.metadata.psutil.cpu_count", return_value=8)
    @patch("snaploop.metadata.psutil.virtual_memory")
    @patch("snaploop.metadata.shutil.disk_usage")
    def test_reports_sizes_in_gb(self, mock_disk, mock_mem, mock_cpu, mock_load):
        mock_mem.return_value = MagicMock(total=16 * 1024**3)
        mock_disk.return_value = MagicMock(free=100 * 1024**3)

        info = get_hardware_info(Path("."))

        self.assertEqual(info["cpu_count_logical"], 8)
        self.assertEqual(info["total_ram_gb"], 16.0)
        self.assertEqual(info["disk_free_gb"], 100.0)
        self.assertEqual(info["system_load_1min"], 1.5)

    @patch("snaploop.metadata.psutil.getloadavg", side_effect=OSError("unsupported"))
    def test_missing_load_average(self, mock_load):
        info = get_hardware_info(Path("."))
        self.assertIsNone(info["system_load_1min"])


class TestGenerateRunMetadata(unittest.TestCase):
    """Tests for the main generate_run_metadata function."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.output_dir = Path(self.temp_dir.name)

    def tearDown(self):
        self.temp_dir.cleanup()

    @patch("snaploop.metadata.get_git_info", return_value={"commit": "abc123", "dirty": False})
    @patch("snaploop.metadata.psutil.cpu_count", return_value=8)
    @patch("snaploop.metadata.psutil.virtual_memory")
    @patch("snaploop.metadata.shutil.disk_usage")
    def test_generates_and_saves_metadata(self, mock_disk, mock_mem, mock_cpu, mock_git):
        mock_mem.return_value = MagicMock(total=16 * 1024**3)
        mock_disk.return_value = MagicMock(free=100 * 1024**3)
        configuration = {"snapshot": "rpool/go@base", "concurrency": 4}

        metadata = generate_run_metadata(self.output_dir, configuration)

        for key in ("run_id", "environment", "hardware", "configuration"):
            self.assertIn(key, metadata)
        self.assertEqual(metadata["configuration"], configuration)
        self.assertEqual(metadata["environment"]["snaploop_version"]["commit"], "abc123")

        saved = json.loads((self.output_dir / METADATA_FILE).read_text())
        self.assertEqual(saved["run_id"], metadata["run_id"])
        self.assertEqual(saved["hardware"]["cpu_count_logical"], 8)

    @patch("snaploop.metadata.get_git_info", return_value={"commit": "abc123", "dirty": False})
    def test_each_run_gets_a_new_id(self, mock_git):
        first = generate_run_metadata(self.output_dir, {})
        second = generate_run_metadata(self.output_dir, {})
        self.assertNotEqual(first["run_id"], second["run_id"])

    @patch("snaploop.metadata.get_git_info", return_value={"commit": "abc123", "dirty": False})
    def test_save_failure_only_warns(self, mock_git):
        with (
            patch("builtins.open", side_effect=OSError("read-only")),
            patch("sys.stderr", new_callable=io.StringIO) as mock_stderr,
        ):
            metadata = generate_run_metadata(self.output_dir, {})

        self.assertIn("run_id", metadata)
        self.assertIn("Could not save run metadata", mock_stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
