"""Exception types raised by the sync core."""

from typing import List, Optional


class SyncError(Exception):
    """Base class for sync failures."""


class TransportError(SyncError):
    """The server could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationError(SyncError):
    """A sync request failed validation before transmission."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or "Invalid sync data")
        self.errors = list(errors)


class MalformedChangeError(SyncError):
    """A change is missing its identity or carries an unknown action."""


class ConflictResolutionError(SyncError):
    """Raised by a strategy when it cannot produce a resolution."""


class UnknownStrategyError(ValueError):
    """No conflict resolution strategy is registered under the given name."""
