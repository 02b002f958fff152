"""Errors raised by remote To Do service adapters."""


class RemoteApiError(Exception):
    """Base class for failures talking to the remote service."""

    retriable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(RemoteApiError):
    """Connection failures, timeouts and server-side errors worth retrying."""

    retriable = True


class RateLimitedError(TransientNetworkError):
    """The service asked us to slow down (HTTP 429)."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class UnauthorizedError(RemoteApiError):
    """Credentials were rejected; the session needs re-authentication."""


class RemoteValidationError(RemoteApiError):
    """The service rejected the request itself; retrying will not help."""


class InvalidCursorError(RemoteApiError):
    """The delta cursor has expired or is otherwise unusable."""
