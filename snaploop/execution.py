"""
Test-suite execution for snaploop.

This module provides the TestExecutor class, which runs the external test
command inside a clone and classifies the run strictly by exit status.
Output is written into the clone itself, so it is kept or discarded
together with the clone.
"""

import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Mapping, Sequence

from snaploop.utils import ExecutionResult
from snaploop.volumes import Clone, command_label

DEFAULT_COMMAND = ("bash", "./all.bash")
DEFAULT_WORKDIR = "goroot/src"

# Runtime settings that make a crashing Go test suite leave the most evidence.
DEFAULT_TEST_ENV = {
    # Dump core (with SIGABRT) on fatal runtime errors and SIGSEGV.
    "GOTRACEBACK": "crash",
    # Fill freed objects with known contents to surface memory bugs.
    "GODEBUG": "clobberfree",
}

STDOUT_FILE = "test_run_stdout"
STDERR_FILE = "test_run_stderr"
CLONE_ENV_VAR = "SNAPLOOP_CLONE"

# Exit status recorded when the test command could not be started at all.
LAUNCH_ERROR_RETURNCODE = 255


class TestExecutor:
    """
    Runs the test command against one clone at a time.

    A single instance is shared by all workers; it holds configuration
    only, so concurrent calls to run() need no locking.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_COMMAND,
        workdir: str = DEFAULT_WORKDIR,
        extra_env: Mapping[str, str] | None = None,
    ):
        """
        Initialize the TestExecutor.

        Args:
            command: The test command's argv.
            workdir: Directory, relative to the clone's mountpoint, to run it in.
            extra_env: Variables added to the inherited environment. Defaults
                to DEFAULT_TEST_ENV.
        """
        if not command:
            raise ValueError("test command must not be empty")
        if Path(workdir).is_absolute():
            raise ValueError(f"workdir must be relative to the clone, got {workdir!r}")
        self.command = list(command)
        self.workdir = workdir
        self.env = os.environ.copy()
        self.env.update(DEFAULT_TEST_ENV if extra_env is None else extra_env)

    def output_paths(self, clone: Clone) -> tuple[Path, Path]:
        """Return where a run in ``clone`` writes its stdout and stderr."""
        return clone.mountpoint / STDOUT_FILE, clone.mountpoint / STDERR_FILE

    def run(self, clone: Clone) -> ExecutionResult:
        """
        Run the test command in ``clone`` and wait for it to finish.

        There is no timeout: a hung test suite blocks the calling worker.
        Exit code 0 passes; a non-zero exit, a signal, or a failure to
        launch the command fails.
        """
        stdout_path, stderr_path = self.output_paths(clone)
        cwd = clone.mountpoint / self.workdir
        env = self.env.copy()
        env[CLONE_ENV_VAR] = str(clone.mountpoint)

        start_time = time.monotonic()
        try:
            # "x" mode: output files are never shared with an earlier run.
            with open(stdout_path, "x") as stdout_file, open(stderr_path, "x") as stderr_file:
                result = subprocess.run(
                    self.command,
                    cwd=cwd,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    env=env,
                    # Own session: a terminal Ctrl+C reaches only snaploop,
                    # which lets in-flight attempts finish.
                    start_new_session=True,
                )
        except OSError as e:
            end_time = time.monotonic()
            error = f"could not run {command_label(self.command)} in {cwd}: {e}"
            print(f"  [!] An OS-level error occurred during test execution: {error}", file=sys.stderr)
            self._record_launch_error(stderr_path, error)
            return ExecutionResult(
                returncode=LAUNCH_ERROR_RETURNCODE,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
                execution_time_ms=int((end_time - start_time) * 1000),
                error=error,
            )
        end_time = time.monotonic()

        return ExecutionResult(
            returncode=result.returncode,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            execution_time_ms=int((end_time - start_time) * 1000),
        )

    def _record_launch_error(self, stderr_path: Path, error: str) -> None:
        """Leave the launch error next to the test output in the clone."""
        try:
            with open(stderr_path, "a", encoding="utf-8") as f:
                f.write(f"snaploop: {error}\n")
        except OSError as e:
            print(f"  [!] Warning: Could not write {stderr_path}: {e}", file=sys.stderr)
