"""Custom exceptions for threadsync."""


class ThreadSyncError(Exception):
    """Base exception for all threadsync errors."""


class AccessError(ThreadSyncError):
    """The thread source or channel cannot be reached with the configured token."""


class ThreadFetchError(ThreadSyncError):
    """Failed to fetch the messages of one thread."""


class ValidationError(ThreadSyncError):
    """Input that cannot be processed (empty thread, missing fingerprint)."""


class StateError(ThreadSyncError):
    """The mapping table could not be loaded or persisted."""


class SyncInProgressError(ThreadSyncError):
    """A sync for the same channel is already running in this process."""


class PublishError(ThreadSyncError):
    """The publish target rejected a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(PublishError):
    """Credentials were rejected by the publish target."""


class PermissionDeniedError(PublishError):
    """Credentials are valid but the account lacks the required role."""


class NotFoundError(PublishError):
    """The endpoint or document does not exist on the publish target."""
