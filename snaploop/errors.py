"""Exception types raised by snaploop."""


class SnaploopError(Exception):
    """Base class for all snaploop errors."""


class InvalidName(SnaploopError, ValueError):
    """A dataset, snapshot, or attempt name could not be built or parsed."""


class ProvisioningError(SnaploopError):
    """A dataset could not be created or cloned."""

    def __init__(self, message: str, leaked: str | None = None):
        super().__init__(message)
        # A dataset that was created before the failure and is left in place.
        self.leaked = leaked


class DestroyError(SnaploopError):
    """A clone could not be destroyed."""


class CommandError(SnaploopError):
    """An external volume-manager command exited unsuccessfully."""
