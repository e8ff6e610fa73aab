"""
Errors raised by remote CI API calls.

The client never retries; callers decide whether a failure is worth
another attempt based on the error type and status code.
"""


class RemoteAPIError(Exception):
    """A remote call failed; carries the HTTP status when one was received."""

    def __init__(
        self, message: str, status_code: int | None = None, url: str | None = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RemoteConnectionError(RemoteAPIError):
    """The instance could not be reached (DNS, refused, timeout, TLS)."""


class RemoteAuthError(RemoteAPIError):
    """The instance rejected the credentials (401/403)."""


class RemoteDataError(RemoteAPIError):
    """The instance answered with a payload of an unexpected shape."""
