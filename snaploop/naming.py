"""
Names for snapshots, working areas, and per-attempt clones.

Everything here is pure string manipulation: no dataset is created or
inspected. Uniqueness of attempt names follows from the (worker, attempt)
pair being embedded in the name, so workers never need to coordinate.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from snaploop.errors import InvalidName

WORKING_AREA_PREFIX = "snaploop"


def _check_dataset_path(path: str, what: str) -> None:
    if not isinstance(path, str) or not path:
        raise InvalidName(f"{what} must be a non-empty string")
    if "@" in path:
        raise InvalidName(f"{what} {path!r} must not contain '@'")
    if path.startswith("/") or path.endswith("/") or "//" in path:
        raise InvalidName(f"{what} {path!r} has an empty path component")
    if any(c.isspace() for c in path):
        raise InvalidName(f"{what} {path!r} must not contain whitespace")


def _check_index(value: int, what: str) -> None:
    # bool is an int subclass; "thread-True" is never what anyone meant.
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidName(f"{what} must be a non-negative integer, got {value!r}")


@dataclass(frozen=True)
class SnapshotRef:
    """An immutable ZFS snapshot: ``<dataset>@<snapshot>``."""

    dataset: str
    snapshot: str

    @classmethod
    def parse(cls, text: str) -> SnapshotRef:
        """Parse ``pool/dataset@name`` into a SnapshotRef."""
        if not isinstance(text, str) or "@" not in text:
            raise InvalidName(f"bad syntax for snapshot name {text!r} (missing '@')")
        dataset, _, snapshot = text.partition("@")
        if not snapshot or "@" in snapshot:
            raise InvalidName(f"bad syntax for snapshot name {text!r}")
        _check_dataset_path(dataset, "snapshot dataset")
        return cls(dataset=dataset, snapshot=snapshot)

    @property
    def parent_path(self) -> str:
        """The dataset the snapshot was taken of."""
        return self.dataset

    def __str__(self) -> str:
        return f"{self.dataset}@{self.snapshot}"


def new_working_area_name(parent_path: str, now: float | None = None) -> str:
    """
    Return a fresh working-area dataset name under ``parent_path``.

    The name carries a millisecond timestamp, which is unique enough for
    one invocation per parent dataset at a time.
    """
    _check_dataset_path(parent_path, "parent dataset")
    if now is None:
        now = time.time()
    millis = int(now * 1000)
    return f"{parent_path}/{WORKING_AREA_PREFIX}-{millis}"


def new_attempt_name(working_area: str, worker_id: int, attempt: int) -> str:
    """Return the clone dataset name for one worker's attempt."""
    _check_dataset_path(working_area, "working area")
    _check_index(worker_id, "worker id")
    _check_index(attempt, "attempt number")
    return f"{working_area}/thread-{worker_id}-run-{attempt}"
