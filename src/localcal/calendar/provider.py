"""Provider contract implemented by every calendar backend."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Literal

from localcal.calendar.models import (
    Calendar,
    ConnectionTestResult,
    CreateEventInput,
    Event,
    SyncResult,
    UpdateEventInput,
)

ProviderType = Literal["google_api", "caldav"]

# Window used by token-less (full) syncs on every backend.
SYNC_WINDOW_PAST_DAYS = 90
SYNC_WINDOW_FUTURE_DAYS = 365

CONNECTION_FAILED_MESSAGE = "Connection failed"


def connection_failure_message(exc: BaseException) -> str:
    """Render a connection-test failure without leaking object reprs."""
    message = str(exc).strip()
    return message or CONNECTION_FAILED_MESSAGE


class CalendarProvider(abc.ABC):
    """Provider abstraction shared by the REST and CalDAV backends."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id

    @property
    @abc.abstractmethod
    def type(self) -> ProviderType:
        """Provider identifier (``google_api`` or ``caldav``)."""
        ...

    @abc.abstractmethod
    async def list_calendars(self) -> list[Calendar]:
        """Return every calendar visible to the account."""
        ...

    @abc.abstractmethod
    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Event]:
        """Return events of *calendar_id* overlapping the time range."""
        ...

    @abc.abstractmethod
    async def create_event(self, calendar_id: str, event: CreateEventInput) -> Event:
        """Create an event and return its authoritative shape."""
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar_id: str,
        remote_id: str,
        event: UpdateEventInput,
        etag: str | None = None,
    ) -> Event:
        """Apply the provided fields of *event* and return the updated shape."""
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        remote_id: str,
        etag: str | None = None,
    ) -> None:
        """Delete an event, conditioned on *etag* when the backend supports it."""
        ...

    @abc.abstractmethod
    async def sync_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
    ) -> SyncResult:
        """Fetch changes since *sync_token* (or a full window when absent).

        An empty result with no ``new_sync_token`` (``SyncResult.empty()``)
        tells the caller the token expired and a token-less call is required.
        """
        ...

    @abc.abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Check credentials and reachability; never raises."""
        ...

    async def shutdown(self) -> None:  # noqa: B027
        """Release provider resources."""
