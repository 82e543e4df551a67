from __future__ import annotations

from typing import Optional


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_RATE_LIMITED = 29


class DltrackError(Exception):
    """Base class for every error raised by dltrack."""


class ValidationError(DltrackError):
    """Malformed identifier, bad option value or mutually exclusive flags."""


class NotFoundError(DltrackError):
    """Unknown player identifier or a record the API does not have."""


class RateLimited(DltrackError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientNetworkError(DltrackError):
    """Connection failure, timeout or 5xx that outlived the retry budget."""


class ParseError(DltrackError):
    """Payload did not have the expected shape."""


class PersistenceError(DltrackError):
    pass


class ApiError(DltrackError):
    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(f"HTTP {status}: {message}" if message else f"HTTP {status}")
        self.status = status


def exit_code_for(exc: Optional[BaseException]) -> int:
    if exc is None:
        return EXIT_OK
    if isinstance(exc, RateLimited):
        return EXIT_RATE_LIMITED
    return EXIT_ERROR
