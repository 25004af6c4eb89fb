"""
This module contains generic, reusable helper functions and classes for snaploop.

It includes utilities for console logging from worker threads, saving the
run report, and structuring execution results.
"""

import json
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO


def utc_timestamp() -> str:
    """Return the current UTC time in ISO format, for log lines."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def safe_timestamp(timestamp: str) -> str:
    """Sanitize an ISO timestamp for use in a filename."""
    return timestamp.replace(":", "-").replace("+", "Z")


def log_line(worker_id: int, attempt: int, message: str, file: TextIO | None = None) -> None:
    """Print one timestamped progress line for a worker's attempt."""
    # One write per line, so concurrent workers cannot split each other's lines.
    print(
        f"{utc_timestamp()}: thread {worker_id}: attempt {attempt}: {message}\n",
        end="",
        file=file if file is not None else sys.stdout,
    )


def save_json(path: Path, data: dict[str, Any]) -> None:
    """Save a JSON document, warning instead of raising on I/O errors."""
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True, default=str)
    except (IOError, OSError) as e:
        print(f"[!] Warning: Could not save {path}: {e}", file=sys.stderr)


class TeeLogger:
    """
    A file-like object that writes to both a file and another stream
    (like the original stdout), and flushes immediately.

    Features:
    - Thread safety: worker threads print concurrently, so writes are
      serialized behind a lock. log_line() emits each line as one write,
      so lines from different workers never interleave.
    - Verbosity filtering: when verbose=False, per-attempt detail lines
      (starts and passes) are suppressed from both console and file.
    """

    # Fragments identifying lines suppressed in quiet mode.
    _QUIET_SUPPRESS_FRAGMENTS: tuple[str, ...] = (
        ": start (see ",
        ": passed (",
    )

    def __init__(
        self,
        file_path: str | Path,
        original_stream: TextIO,
        verbose: bool = True,
    ) -> None:
        """Initialize the logger with a file path and an existing stream.

        Args:
            file_path: Path to the log file.
            original_stream: The original stream (e.g., sys.stdout) to tee to.
            verbose: If False, suppress detail-level messages. Default True.
        """
        self.original_stream = original_stream
        self.log_file = open(file_path, "w", encoding="utf-8")
        self.verbose = verbose
        self._lock = threading.Lock()
        # print() sends the text and its "\n" as two writes; a suppressed
        # line's trailing newline must be swallowed too.
        self._last_was_suppressed: bool = False

    def _is_suppressed(self, line: str) -> bool:
        """Check if a line should be suppressed in quiet mode."""
        if self.verbose:
            return False
        return any(fragment in line for fragment in self._QUIET_SUPPRESS_FRAGMENTS)

    def write(self, message: str) -> None:
        """Write a message to both the original stream and the log file."""
        with self._lock:
            if message == "\n" and self._last_was_suppressed:
                self._last_was_suppressed = False
                return
            if message and message != "\n":
                if self._is_suppressed(message):
                    self._last_was_suppressed = not message.endswith("\n")
                    return
                self._last_was_suppressed = False
            self.original_stream.write(message)
            self.log_file.write(message)
            self._do_flush()

    def _do_flush(self) -> None:
        """Flush both underlying streams."""
        self.original_stream.flush()
        self.log_file.flush()

    def flush(self) -> None:
        """Flush both underlying streams."""
        with self._lock:
            self._do_flush()

    def close(self) -> None:
        """Flush and close the log file."""
        with self._lock:
            self._do_flush()
            self.log_file.close()

    @property
    def encoding(self) -> str:
        """Return the encoding of the original stream."""
        return getattr(self.original_stream, "encoding", "utf-8")

    def isatty(self) -> bool:
        """Return whether the original stream is a TTY."""
        return hasattr(self.original_stream, "isatty") and self.original_stream.isatty()

    def fileno(self) -> int:
        """Return the file descriptor of the original stream.

        Raises OSError if the original stream doesn't have a file descriptor.
        """
        if hasattr(self.original_stream, "fileno"):
            return self.original_stream.fileno()
        raise OSError("TeeLogger does not have a file descriptor")


@dataclass
class ExecutionResult:
    """A simple data class to hold the results of one test-suite run."""

    returncode: int
    stdout_path: Path
    stderr_path: Path
    execution_time_ms: int
    error: str | None = None

    @property
    def passed(self) -> bool:
        """Only a clean exit counts as a pass; signals and launch errors fail."""
        return self.returncode == 0
