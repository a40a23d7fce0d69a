"""Error taxonomy shared by calendar providers.

- ``CalendarConfigError``: account is missing credentials or has no provider.
  Fatal, never retried.
- ``CalendarRequestError``: a backend answered with a non-success status.
- ``CalendarNotFoundError`` / ``CalendarConflictError``: request errors with a
  specific meaning (missing resource, failed ``If-Match`` precondition).

Sync-token expiry is not an error class: providers convert it
into ``SyncResult.empty()`` so the caller knows a full resync is required.
"""

from __future__ import annotations


class CalendarError(RuntimeError):
    """Base error raised by calendar providers and helpers."""


class CalendarConfigError(CalendarError):
    """Raised when an account has no usable calendar configuration."""


class CalendarRequestError(CalendarError):
    """Raised when a calendar backend request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar request failed ({status_code}): {message}")


class CalendarNotFoundError(CalendarRequestError):
    """Raised when the backing resource of an event no longer exists."""

    def __init__(self, message: str) -> None:
        super().__init__(status_code=404, message=message)


class CalendarConflictError(CalendarRequestError):
    """Raised when an ETag precondition fails (the resource changed remotely)."""

    def __init__(self, message: str) -> None:
        super().__init__(status_code=412, message=message)
