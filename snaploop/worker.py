"""
The per-thread run loop of snaploop.

Each WorkerLoop repeatedly clones the source snapshot, runs the test suite
in the clone, and either destroys the clone (pass) or keeps it and raises
the shared StopSignal (fail). Workers never talk to each other except
through the StopSignal, and a worker only looks at it between attempts:
an attempt that has started always runs to completion.
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from snaploop.errors import DestroyError, ProvisioningError
from snaploop.naming import SnapshotRef, new_attempt_name
from snaploop.utils import ExecutionResult, log_line
from snaploop.volumes import Clone, CloneManager, describe_returncode

if TYPE_CHECKING:
    from snaploop.execution import TestExecutor
    from snaploop.health import HealthMonitor


class StopSignal:
    """
    A process-wide "some attempt failed" flag.

    Monotonic: once set it stays set. Setting it again is harmless, so
    workers failing at the same moment need no further coordination.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._is_set = False
        # (worker_id, attempt) of the first failure seen; informational only.
        self.first_setter: tuple[int, int] | None = None

    def set(self, worker_id: int, attempt: int) -> bool:
        """Raise the signal. Returns True if this call was the one that raised it."""
        with self._lock:
            if self._is_set:
                return False
            self._is_set = True
            self.first_setter = (worker_id, attempt)
            return True

    def is_set(self) -> bool:
        with self._lock:
            return self._is_set


class AttemptOutcome(Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class WorkerState(Enum):
    STARTING = "starting"
    CLONING = "cloning"
    EXECUTING = "executing"
    CLASSIFYING = "classifying"
    CLEANUP = "cleanup"
    STOPPED = "stopped"


class WorkerExit(Enum):
    """Why a worker stopped."""

    LIMIT_REACHED = "reached the run limit"
    STOP_SIGNAL = "stopped after another thread's failure"
    TEST_FAILED = "test suite failed"
    PROVISIONING_ERROR = "provisioning error"
    INTERRUPTED = "interrupted"
    CRASHED = "crashed"


@dataclass
class Attempt:
    """One run of the test suite by one worker."""

    worker_id: int
    number: int
    started_at: datetime
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    retained: bool = False
    clone: Clone | None = None
    result: ExecutionResult | None = None


@dataclass
class WorkerResult:
    """What one worker did, for the terminal report."""

    worker_id: int
    attempts: int = 0
    reason: WorkerExit | None = None
    error: str | None = None
    retained: list[str] = field(default_factory=list)
    # Clones left on disk that were neither retained nor destroyed.
    leaked: list[str] = field(default_factory=list)
    destroy_errors: int = 0
    failed_attempt: int | None = None

    def describe(self) -> str:
        reason = self.reason.value if self.reason else "did not finish"
        if self.error:
            return f"{reason}: {self.error}"
        if self.reason is WorkerExit.TEST_FAILED:
            return f"{reason} on attempt {self.failed_attempt}"
        return reason


class WorkerLoop:
    """
    Run the clone/execute/classify/cleanup cycle for one worker thread.

    All collaborators are injected; the StopSignal and halt Event are shared
    with the other workers, everything else is read-only configuration.
    """

    def __init__(
        self,
        worker_id: int,
        snapshot: SnapshotRef,
        working_area: str,
        clone_manager: CloneManager,
        executor: TestExecutor,
        stop_signal: StopSignal,
        stop_after: int | None = None,
        keep_success: bool = False,
        health_monitor: HealthMonitor | None = None,
        halt: threading.Event | None = None,
    ):
        """
        Initialize the WorkerLoop.

        Args:
            worker_id: This worker's index, 0..concurrency-1.
            snapshot: Source snapshot cloned for every attempt.
            working_area: Dataset under which clones are created.
            clone_manager: Creates and destroys clones.
            executor: Runs the test suite in a clone.
            stop_signal: Shared failure flag.
            stop_after: Attempts to make before stopping (None: until failure).
            keep_success: Retain clones of passing runs too.
            health_monitor: Optional adverse event log.
            halt: Optional Event set when the user asks the run to stop.
        """
        if stop_after is not None and stop_after < 1:
            raise ValueError(f"stop_after must be at least 1, got {stop_after}")
        self.worker_id = worker_id
        self.snapshot = snapshot
        self.working_area = working_area
        self.clone_manager = clone_manager
        self.executor = executor
        self.stop_signal = stop_signal
        self.stop_after = stop_after
        self.keep_success = keep_success
        self.health_monitor = health_monitor
        self.halt = halt
        self.state = WorkerState.STARTING
        self.attempt: Attempt | None = None
        self.result = WorkerResult(worker_id=worker_id)

    def _check_stop(self) -> WorkerExit | None:
        """Decide, between attempts, whether this worker is done."""
        if self.stop_after is not None and self.result.attempts >= self.stop_after:
            return WorkerExit.LIMIT_REACHED
        if self.stop_signal.is_set():
            return WorkerExit.STOP_SIGNAL
        if self.halt is not None and self.halt.is_set():
            return WorkerExit.INTERRUPTED
        return None

    def run(self) -> WorkerResult:
        """Loop until the run limit, a failure anywhere, or a local fatal error."""
        while True:
            self.state = WorkerState.STARTING
            stop_reason = self._check_stop()
            if stop_reason is not None:
                self.result.reason = stop_reason
                break

            attempt = Attempt(
                worker_id=self.worker_id,
                number=self.result.attempts,
                started_at=datetime.now(timezone.utc),
            )
            self.attempt = attempt
            provisioned = self.run_attempt(attempt)
            self.attempt = None
            if not provisioned:
                break

            if attempt.outcome is AttemptOutcome.FAILED:
                self.result.reason = WorkerExit.TEST_FAILED
                self.result.failed_attempt = attempt.number
                break

        self.state = WorkerState.STOPPED
        return self.result

    def run_attempt(self, attempt: Attempt) -> bool:
        """
        Carry out one attempt, from cloning to cleanup.

        Returns False if the attempt could not be provisioned, which ends
        this worker (and only this worker).
        """
        self.state = WorkerState.CLONING
        dataset = new_attempt_name(self.working_area, self.worker_id, attempt.number)
        try:
            attempt.clone = self.clone_manager.clone_snapshot(self.snapshot, dataset)
        except ProvisioningError as e:
            print(
                f"[!] Thread {self.worker_id}: attempt {attempt.number}: {e}\n",
                end="",
                file=sys.stderr,
            )
            if e.leaked:
                self.result.leaked.append(e.leaked)
            if self.health_monitor:
                self.health_monitor.record_clone_failed(
                    self.worker_id, attempt.number, dataset, str(e)
                )
            self.result.reason = WorkerExit.PROVISIONING_ERROR
            self.result.error = str(e)
            return False

        self.state = WorkerState.EXECUTING
        stdout_path, _ = self.executor.output_paths(attempt.clone)
        log_line(self.worker_id, attempt.number, f"start (see {stdout_path})")
        attempt.result = self.executor.run(attempt.clone)

        self.state = WorkerState.CLASSIFYING
        self._classify(attempt)

        self.state = WorkerState.CLEANUP
        if attempt.retained:
            self.result.retained.append(attempt.clone.dataset)
        else:
            self._discard(attempt)
        self.result.attempts += 1
        return True

    def _classify(self, attempt: Attempt) -> None:
        result = attempt.result
        assert attempt.clone is not None and result is not None
        if result.passed:
            attempt.outcome = AttemptOutcome.PASSED
            attempt.retained = self.keep_success
            log_line(
                self.worker_id, attempt.number, f"passed ({result.execution_time_ms} ms)"
            )
            return

        attempt.outcome = AttemptOutcome.FAILED
        attempt.retained = True
        first = self.stop_signal.set(self.worker_id, attempt.number)
        how = result.error or describe_returncode(result.returncode)
        log_line(
            self.worker_id,
            attempt.number,
            f"FAILED: {how} (kept {attempt.clone.dataset} at {attempt.clone.mountpoint})",
        )
        if first:
            print("[!] Stop requested: no thread will start another attempt.\n", end="")
        if self.health_monitor:
            if result.error:
                self.health_monitor.record_launch_error(
                    self.worker_id, attempt.number, result.error
                )
            self.health_monitor.record_test_failed(
                self.worker_id,
                attempt.number,
                attempt.clone.dataset,
                result.returncode,
                result.execution_time_ms,
            )

    def _discard(self, attempt: Attempt) -> None:
        """Destroy a passing attempt's clone; a failure here only leaks it."""
        assert attempt.clone is not None
        try:
            self.clone_manager.destroy_clone(attempt.clone)
        except DestroyError as e:
            self.result.destroy_errors += 1
            self.result.leaked.append(attempt.clone.dataset)
            print(
                f"  [!] Thread {self.worker_id}: attempt {attempt.number}: "
                f"leaked clone: {e}\n",
                end="",
                file=sys.stderr,
            )
            if self.health_monitor:
                self.health_monitor.record_destroy_failed(
                    self.worker_id, attempt.number, attempt.clone.dataset, str(e)
                )
