from typing import Optional


class SyncError(Exception):
    """Base class for errors raised by the sync core."""


class StoreError(SyncError):
    """The local state file could not be read or written.

    Fatal to the operation that triggered it: the caller's write did not happen.
    """


class UnknownUserError(StoreError):
    pass


class RemoteError(SyncError):
    """The media server answered, but not with what we asked for."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailableError(RemoteError):
    """The media server could not be reached at all (DNS, refused, timeout)."""
