"""
Health monitoring for snaploop.

Records discrete adverse events (failed clones, leaked clones, failing test
runs) to a JSONL log file for observability. The HealthMonitor is designed
to be non-intrusive: it never raises exceptions, and it is safe to call
from every worker thread at once.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class HealthMonitor:
    """Track and record adverse run events for observability.

    Writes events to a JSONL log file and maintains in-memory counters.
    All public methods silently swallow I/O errors.
    """

    def __init__(self, log_path: Path | None) -> None:
        """Initialize the HealthMonitor.

        Args:
            log_path: Path to the JSONL health events log file, or None to
                keep counters in memory only.
        """
        self.log_path = log_path
        self.counters: dict[str, int] = {}
        self._lock = threading.Lock()

    def _write_event(self, category: str, event: str, **kwargs: Any) -> None:
        """Append a single event to the JSONL log and bump its counter.

        Args:
            category: Event category (provisioning, execution, worker).
            event: Event type name.
            **kwargs: Additional event-specific fields.
        """
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "cat": category,
            "event": event,
        }
        record.update(kwargs)
        line = json.dumps(record, default=str) + "\n"

        counter_key = f"{category}.{event}"
        with self._lock:
            self.counters[counter_key] = self.counters.get(counter_key, 0) + 1
            if self.log_path is None:
                return
            try:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError:
                pass  # Never stop a worker for a health event

    # =========================================================================
    # Provisioning Events
    # =========================================================================

    def record_clone_failed(self, worker_id: int, attempt: int, dataset: str, error: str) -> None:
        """Record a clone that could not be created; the worker stops."""
        self._write_event(
            "provisioning",
            "clone_failed",
            worker_id=worker_id,
            attempt=attempt,
            dataset=dataset,
            error=error,
        )

    def record_destroy_failed(self, worker_id: int, attempt: int, dataset: str, error: str) -> None:
        """Record a clone that could not be destroyed and was leaked."""
        self._write_event(
            "provisioning",
            "destroy_failed",
            worker_id=worker_id,
            attempt=attempt,
            dataset=dataset,
            error=error,
        )

    # =========================================================================
    # Execution Events
    # =========================================================================

    def record_test_failed(
        self, worker_id: int, attempt: int, dataset: str, returncode: int, duration_ms: int
    ) -> None:
        """Record a failing test run whose clone was retained."""
        self._write_event(
            "execution",
            "test_failed",
            worker_id=worker_id,
            attempt=attempt,
            dataset=dataset,
            returncode=returncode,
            duration_ms=duration_ms,
        )

    def record_launch_error(self, worker_id: int, attempt: int, error: str) -> None:
        """Record a test command that could not be started."""
        self._write_event(
            "execution",
            "launch_error",
            worker_id=worker_id,
            attempt=attempt,
            error=error,
        )

    # =========================================================================
    # Worker Events
    # =========================================================================

    def record_worker_crashed(self, worker_id: int, error: str) -> None:
        """Record a worker thread that died from an unexpected exception."""
        self._write_event("worker", "worker_crashed", worker_id=worker_id, error=error)

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> dict[str, int]:
        """Return a copy of the in-memory event counters.

        Returns:
            Dict mapping "category.event" keys to occurrence counts.
        """
        with self._lock:
            return dict(self.counters)
