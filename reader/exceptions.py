from typing import Optional


class ReaderError(Exception):
    """Base class for every error raised by the reader."""


class ConfigurationError(ReaderError):
    """Raised when a request cannot be attempted (missing key, blank query, offline download while offline)."""


class ExhaustionError(ReaderError):
    """Raised when no tier produced any article for a category request."""


class ResponseFormatError(ReaderError):
    """Raised when the API answers with something that is not a valid news payload."""


class HTTPError(ReaderError):
    """Raised for a non-2xx response that is not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class AuthError(HTTPError):
    """Raised on 401. Never retried."""


class RateLimitError(HTTPError):
    """Raised on 429 once retries are exhausted."""


class ServerError(HTTPError):
    """Raised on 5xx once retries are exhausted."""


class NetworkError(ReaderError):
    """Raised when the request never produced a response."""


class RequestTimeoutError(NetworkError):
    """Raised when the request exceeded its timeout."""
