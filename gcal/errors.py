"""Error types raised by the remote calendar client and token manager."""
from dataclasses import dataclass
from typing import Optional

RATE_LIMIT_STATUSES = (403, 429)
RATE_LIMIT_MARKERS = (
    'ratelimitexceeded',
    'userratelimitexceeded',
    'quotaexceeded',
    'rate limit',
    'quota',
)
GONE_STATUSES = (404, 410)


def is_rate_limited(status: Optional[int], message: Optional[str] = None) -> bool:
    """
    Decide whether a failure signals rate limiting or quota exhaustion.

    Args:
        status: HTTP status code, if known
        message: Error text or payload

    Returns:
        True if the failure should be retried with backoff
    """
    if status in RATE_LIMIT_STATUSES:
        return True
    text = (message or '').lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


class CalendarAPIError(Exception):
    """Base error for remote calendar failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def __str__(self) -> str:
        if self.status is not None:
            return f"HTTP {self.status}: {self.message}"
        return self.message


class AuthenticationError(CalendarAPIError):
    """Authorization code exchange or token refresh failed."""


class RateLimitedError(CalendarAPIError):
    """Remote side reported rate limiting or exhausted quota."""


class NotFoundError(CalendarAPIError):
    """Remote event does not exist (404) or is gone (410)."""


class TransportError(CalendarAPIError):
    """Network or connection failure."""


class DecodeError(CalendarAPIError):
    """Response payload could not be decoded."""


class InvalidArgumentError(CalendarAPIError, ValueError):
    """Caller supplied arguments the API cannot accept."""


def error_for_status(status: int, message: str) -> CalendarAPIError:
    """Map an HTTP failure status to the matching error type."""
    if status in GONE_STATUSES:
        return NotFoundError(message, status)
    if status == 401:
        return AuthenticationError(message, status)
    if is_rate_limited(status, message):
        return RateLimitedError(message, status)
    return CalendarAPIError(message, status)


@dataclass
class BatchItemError:
    """Failure of a single item inside a batch request."""
    index: int
    status: Optional[int]
    message: str
    reason: Optional[str] = None

    @property
    def rate_limited(self) -> bool:
        return is_rate_limited(self.status, f"{self.reason or ''} {self.message}")

    @property
    def not_found(self) -> bool:
        return self.status in GONE_STATUSES

    def __str__(self) -> str:
        status = self.status if self.status is not None else 'n/a'
        return f"item {self.index} (status {status}): {self.message}"
