"""
This module contains the RunCoordinator class.

The coordinator creates the run's working dataset, starts one WorkerLoop
per thread with a shared StopSignal, waits for all of them, and condenses
what they did into a TerminalReport that tells a real test failure apart
from an infrastructure problem or a completed run.
"""

from __future__ import annotations

import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from snaploop.errors import ProvisioningError
from snaploop.naming import SnapshotRef, new_working_area_name
from snaploop.volumes import CloneManager
from snaploop.worker import StopSignal, WorkerExit, WorkerLoop, WorkerResult

if TYPE_CHECKING:
    from snaploop.execution import TestExecutor
    from snaploop.health import HealthMonitor

JOIN_POLL_INTERVAL = 0.5


class TerminationReason(Enum):
    TEST_FAILURE = "stopped due to test failure"
    INTERRUPTED = "stopped by user"
    PROVISIONING_ERROR = "stopped due to a worker-local provisioning error"
    LIMIT_REACHED = "stopped after reaching the run limit"
    STARTUP_ERROR = "could not create the working dataset"


@dataclass
class TerminalReport:
    """The outcome of a whole run."""

    reason: TerminationReason
    working_area: str | None
    workers: list[WorkerResult] = field(default_factory=list)
    stop_signal: bool = False
    error: str | None = None
    duration_secs: float = 0.0

    @property
    def total_attempts(self) -> int:
        return sum(w.attempts for w in self.workers)

    @property
    def retained(self) -> list[str]:
        return [dataset for w in self.workers for dataset in w.retained]

    @property
    def leaked(self) -> list[str]:
        return [dataset for w in self.workers for dataset in w.leaked]

    @property
    def exit_code(self) -> int:
        return 0 if self.reason is TerminationReason.LIMIT_REACHED else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.name,
            "description": self.reason.value,
            "working_area": self.working_area,
            "stop_signal": self.stop_signal,
            "error": self.error,
            "duration_secs": round(self.duration_secs, 3),
            "total_attempts": self.total_attempts,
            "retained": self.retained,
            "leaked": self.leaked,
            "workers": [
                {
                    "worker_id": w.worker_id,
                    "attempts": w.attempts,
                    "reason": w.reason.name if w.reason else None,
                    "error": w.error,
                    "failed_attempt": w.failed_attempt,
                    "retained": w.retained,
                    "leaked": w.leaked,
                    "destroy_errors": w.destroy_errors,
                }
                for w in self.workers
            ],
        }


def terminal_reason(workers: list[WorkerResult], stop_signal: bool) -> TerminationReason:
    """Pick the most important reason the run ended, failures first."""
    reasons = {w.reason for w in workers}
    if stop_signal or WorkerExit.TEST_FAILED in reasons:
        return TerminationReason.TEST_FAILURE
    if WorkerExit.INTERRUPTED in reasons:
        return TerminationReason.INTERRUPTED
    if reasons & {WorkerExit.PROVISIONING_ERROR, WorkerExit.CRASHED, None}:
        return TerminationReason.PROVISIONING_ERROR
    return TerminationReason.LIMIT_REACHED


class RunCoordinator:
    """
    Run ``concurrency`` workers against one snapshot until they all stop.

    Configuration is fixed at construction and shared read-only by the
    workers; the StopSignal and the halt Event are the only shared state.
    """

    def __init__(
        self,
        snapshot: SnapshotRef,
        clone_manager: CloneManager,
        executor: TestExecutor,
        concurrency: int = 2,
        stop_after: int | None = None,
        keep_success: bool = False,
        health_monitor: HealthMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the RunCoordinator.

        Args:
            snapshot: The source snapshot every attempt is cloned from.
            clone_manager: Creates the working dataset and the clones.
            executor: Runs the test suite in a clone.
            concurrency: Number of worker threads.
            stop_after: Attempts per worker before stopping (None: until failure).
            keep_success: Retain clones of passing runs too.
            health_monitor: Optional adverse event log shared by the workers.
            clock: Source of the timestamp in the working dataset's name.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        if stop_after is not None and stop_after < 1:
            raise ValueError(f"stop_after must be at least 1, got {stop_after}")
        self.snapshot = snapshot
        self.clone_manager = clone_manager
        self.executor = executor
        self.concurrency = concurrency
        self.stop_after = stop_after
        self.keep_success = keep_success
        self.health_monitor = health_monitor
        self.clock = clock
        self.stop_signal = StopSignal()
        self.halt = threading.Event()
        self.working_area: str | None = None

    def print_parameters(self) -> None:
        """Print a summary of the run's parameters."""
        if self.stop_after is None:
            stop = "after any run fails"
        else:
            plural = "" if self.stop_after == 1 else "s"
            stop = f"after all threads do {self.stop_after} run{plural}"
        save = "for all runs" if self.keep_success else "for failed runs only"
        print(f"using snapshot:  {self.snapshot}")
        print(f"working dataset: {self.working_area}")
        print(f"concurrency:     {self.concurrency}")
        print(f"save results:    {save}")
        print(f"stop:            {stop}")
        print()

    def request_stop(self) -> None:
        """Ask workers to stop starting attempts. In-flight attempts still finish."""
        self.halt.set()

    def run(self) -> TerminalReport:
        """Create the working dataset, run all workers, and report how it ended."""
        start_time = time.monotonic()
        working_area = new_working_area_name(self.snapshot.parent_path, now=self.clock())
        self.working_area = working_area
        self.print_parameters()

        try:
            self.clone_manager.create_working_area(working_area)
        except ProvisioningError as e:
            print(f"[!!!] CRITICAL: {e}", file=sys.stderr)
            return TerminalReport(
                reason=TerminationReason.STARTUP_ERROR,
                working_area=None,
                error=str(e),
                duration_secs=time.monotonic() - start_time,
            )

        loops = [self._make_worker(i) for i in range(self.concurrency)]
        threads = [
            threading.Thread(
                target=self._run_worker, args=(loop,), name=f"snaploop-worker-{loop.worker_id}"
            )
            for loop in loops
        ]
        for thread in threads:
            thread.start()
        self._wait(threads)

        results = [loop.result for loop in loops]
        stop_signal = self.stop_signal.is_set()
        return TerminalReport(
            reason=terminal_reason(results, stop_signal),
            working_area=working_area,
            workers=results,
            stop_signal=stop_signal,
            duration_secs=time.monotonic() - start_time,
        )

    def _make_worker(self, worker_id: int) -> WorkerLoop:
        assert self.working_area is not None
        return WorkerLoop(
            worker_id=worker_id,
            snapshot=self.snapshot,
            working_area=self.working_area,
            clone_manager=self.clone_manager,
            executor=self.executor,
            stop_signal=self.stop_signal,
            stop_after=self.stop_after,
            keep_success=self.keep_success,
            health_monitor=self.health_monitor,
            halt=self.halt,
        )

    def _run_worker(self, loop: WorkerLoop) -> None:
        """Thread body: run one worker, turning an unexpected crash into a result."""
        try:
            loop.run()
        except Exception as e:
            loop.result.reason = WorkerExit.CRASHED
            loop.result.error = f"{type(e).__name__}: {e}"
            clone = loop.attempt.clone if loop.attempt is not None else None
            if clone is not None and clone.dataset not in loop.result.retained:
                loop.result.leaked.append(clone.dataset)
            print(
                f"[!!!] Thread {loop.worker_id} crashed in state {loop.state.name}: {e}\n",
                end="",
                file=sys.stderr,
            )
            traceback.print_exc(file=sys.stderr)
            if self.health_monitor:
                self.health_monitor.record_worker_crashed(loop.worker_id, loop.result.error)

    def _wait(self, threads: list[threading.Thread]) -> None:
        """Join all workers, staying responsive to Ctrl+C."""
        try:
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=JOIN_POLL_INTERVAL)
        except KeyboardInterrupt:
            print(
                "\n[!] Interrupted: waiting for in-flight attempts to finish...",
                file=sys.stderr,
            )
            self.request_stop()
            for thread in threads:
                thread.join()
