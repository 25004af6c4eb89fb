"""
Clone lifecycle management for snaploop.

This module provides:
- VolumeBackend / ZfsBackend: the create, clone, and destroy primitives of the
  underlying volume manager
- CloneManager: the only code that mutates filesystem state, translating
  backend failures into ProvisioningError and DestroyError
"""

from __future__ import annotations

import shlex
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from snaploop.errors import CommandError, DestroyError, ProvisioningError
from snaploop.naming import SnapshotRef

DEFAULT_PRIVILEGE_CMD = ("pfexec",)


@dataclass(frozen=True)
class Clone:
    """A writable clone of the source snapshot."""

    dataset: str
    mountpoint: Path


def command_label(argv: Sequence[str]) -> str:
    """Build a human-readable label for a command, for log and error messages."""
    return " ".join(f'"{arg}"' for arg in argv)


def describe_returncode(returncode: int) -> str:
    """Describe how a process ended, naming the signal if it was killed by one."""
    if returncode >= 0:
        return f"exited with code {returncode}"
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = "unknown signal"
    return f"terminated by signal {-returncode} ({name})"


def run_command(argv: Sequence[str]) -> str:
    """
    Run a command to completion, returning its decoded stdout.

    Raises CommandError with the command label, how it ended, and any
    captured output if it could not be started or exited unsuccessfully.
    """
    label = command_label(argv)
    try:
        result = subprocess.run(list(argv), capture_output=True)
    except OSError as e:
        raise CommandError(f"failed to exec {label}: {e}") from e

    stdout = result.stdout.decode("utf-8", errors="replace")
    if result.returncode == 0:
        return stdout

    message = f"command failed: {label}: {describe_returncode(result.returncode)}"
    stderr = result.stderr.decode("utf-8", errors="replace")
    if stderr:
        message += f"\nstderr:\n{stderr}\n"
    if stdout:
        message += f"\nstdout:\n{stdout}\n"
    raise CommandError(message)


class VolumeBackend:
    """
    Primitives of a copy-on-write volume manager.

    Each call is assumed to be atomic and immediately visible. Failures are
    reported by raising CommandError.
    """

    def create_dataset(self, name: str) -> None:
        raise NotImplementedError

    def clone_snapshot(self, snapshot: SnapshotRef, dest: str) -> None:
        raise NotImplementedError

    def destroy_dataset(self, name: str) -> None:
        raise NotImplementedError

    def mountpoint(self, name: str) -> Path:
        raise NotImplementedError


class ZfsBackend(VolumeBackend):
    """VolumeBackend implemented with the ``zfs`` command."""

    def __init__(self, privilege_cmd: Sequence[str] = DEFAULT_PRIVILEGE_CMD, zfs: str = "zfs"):
        """
        Args:
            privilege_cmd: Prefix for commands that modify datasets (e.g. pfexec
                or sudo). Empty to run zfs directly.
            zfs: Name or path of the zfs executable.
        """
        self.privilege_cmd = list(privilege_cmd)
        self.zfs = zfs

    def _privileged(self, *args: str) -> list[str]:
        return [*self.privilege_cmd, self.zfs, *args]

    def create_dataset(self, name: str) -> None:
        run_command(self._privileged("create", name))

    def clone_snapshot(self, snapshot: SnapshotRef, dest: str) -> None:
        run_command(self._privileged("clone", str(snapshot), dest))

    def destroy_dataset(self, name: str) -> None:
        run_command(self._privileged("destroy", name))

    def mountpoint(self, name: str) -> Path:
        output = run_command([self.zfs, "list", "-H", "-o", "mountpoint", name])
        mountpoint = output.strip()
        if not mountpoint.startswith("/"):
            raise CommandError(f"dataset {name} has no usable mountpoint: {mountpoint!r}")
        return Path(mountpoint)

    def __repr__(self) -> str:
        return f"ZfsBackend({shlex.join(self._privileged())!r})"


class CloneManager:
    """
    Create and destroy the datasets a run works in.

    Calls are not idempotent: destroying the same clone twice is an error,
    so callers issue each operation exactly once per attempt.
    """

    def __init__(self, backend: VolumeBackend):
        self.backend = backend

    def create_working_area(self, name: str) -> str:
        """Create the run's top-level dataset. Failure is fatal to the run."""
        try:
            self.backend.create_dataset(name)
        except (CommandError, OSError) as e:
            raise ProvisioningError(f"could not create working dataset {name}: {e}") from e
        print(f"[+] Created working dataset {name!r}")
        return name

    def clone_snapshot(self, snapshot: SnapshotRef, dest_name: str) -> Clone:
        """Clone ``snapshot`` to ``dest_name`` and return it with its mountpoint."""
        try:
            self.backend.clone_snapshot(snapshot, dest_name)
        except (CommandError, OSError) as e:
            raise ProvisioningError(f"could not clone {snapshot} to {dest_name}: {e}") from e

        try:
            mountpoint = self.backend.mountpoint(dest_name)
        except (CommandError, OSError) as e:
            # The clone exists but cannot be used; it is left for the operator.
            raise ProvisioningError(
                f"could not find mountpoint of {dest_name}: {e}", leaked=dest_name
            ) from e
        return Clone(dataset=dest_name, mountpoint=mountpoint)

    def destroy_clone(self, clone: Clone) -> None:
        """Destroy a clone. Raises DestroyError, which callers treat as recoverable."""
        try:
            self.backend.destroy_dataset(clone.dataset)
        except (CommandError, OSError) as e:
            raise DestroyError(f"could not destroy {clone.dataset}: {e}") from e
