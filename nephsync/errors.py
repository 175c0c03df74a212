"""Exception types raised across the replication engine."""


class NephSyncError(Exception):
    """Base class for nephsync errors."""


class StoreError(NephSyncError):
    """Local storage could not complete an operation."""


class RemoteError(NephSyncError):
    """A request to the replication endpoint failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(RemoteError):
    """Timeouts, connection loss and 5xx responses, after retries ran out."""


class AuthenticationError(RemoteError):
    """The endpoint rejected the credentials (401/403). Never retried."""


class BatchRejectedError(RemoteError):
    """The server rolled back a push batch; the whole batch stays unsynced."""
