"""Canonical, backend-agnostic calendar models.

Every provider maps its raw records into these shapes; the local cache treats
each returned ``Event`` as a complete replacement keyed by
``(calendar_id, remote_id)``.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class EventStatus(StrEnum):
    """Event lifecycle states shared by both backends."""

    confirmed = "confirmed"
    tentative = "tentative"
    cancelled = "cancelled"

    @classmethod
    def parse(cls, value: object) -> EventStatus:
        """Lenient parse; anything unrecognised is ``confirmed``."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.confirmed


class Attendee(BaseModel):
    """Attendee of an event; only ``email`` is guaranteed."""

    model_config = ConfigDict(extra="forbid")

    email: str
    display_name: str | None = None
    response_status: str | None = None


class Event(BaseModel):
    """Canonical event shape shared across provider implementations."""

    remote_id: str
    uid: str | None = None
    etag: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    # Seconds since epoch (UTC).
    start_time: int
    end_time: int
    is_all_day: bool = False
    status: EventStatus = EventStatus.confirmed
    organizer_email: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    html_link: str | None = None
    raw_payload: str | None = None


class Calendar(BaseModel):
    """A remote calendar (event container) exposed by a provider."""

    remote_id: str
    display_name: str
    color: str | None = None
    is_primary: bool = False


class SyncWindow(BaseModel):
    """Time range (epoch seconds) covered by a full refetch."""

    model_config = ConfigDict(frozen=True)

    start_time: int
    end_time: int

    @classmethod
    def around(
        cls,
        now: datetime | None = None,
        *,
        past_days: int,
        future_days: int,
    ) -> SyncWindow:
        anchor = now or datetime.now(UTC)
        return cls(
            start_time=int((anchor - timedelta(days=past_days)).timestamp()),
            end_time=int((anchor + timedelta(days=future_days)).timestamp()),
        )

    @property
    def start(self) -> datetime:
        return datetime.fromtimestamp(self.start_time, UTC)

    @property
    def end(self) -> datetime:
        return datetime.fromtimestamp(self.end_time, UTC)


class SyncResult(BaseModel):
    """Unit of reconciliation returned by one ``sync_events`` call.

    ``window`` is set when the result is a full refetch of a bounded time range
    (token-less sync); the reconciler may then drop cached events inside that
    range that were not returned.
    """

    created: list[Event] = Field(default_factory=list)
    updated: list[Event] = Field(default_factory=list)
    deleted_remote_ids: list[str] = Field(default_factory=list)
    new_sync_token: str | None = None
    new_ctag: str | None = None
    window: SyncWindow | None = None

    @classmethod
    def empty(cls) -> SyncResult:
        """The "sync token no longer valid, do a full resync" signal."""
        return cls()

    @property
    def needs_full_resync(self) -> bool:
        return (
            not self.created
            and not self.updated
            and not self.deleted_remote_ids
            and self.new_sync_token is None
            and self.new_ctag is None
            and self.window is None
        )


class CreateEventInput(BaseModel):
    """Payload for creating an event (also the codec's encode input)."""

    summary: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    attendees: list[Attendee] = Field(default_factory=list)
    status: EventStatus | None = None
    organizer_email: str | None = None

    @classmethod
    def from_event(cls, event: Event) -> CreateEventInput:
        """Rebuild an encodable payload from a decoded event.

        All-day boundaries were decoded as local midnight, so they are turned
        back into local (naive) datetimes to keep the calendar date intact.
        """
        if event.is_all_day:
            start = datetime.fromtimestamp(event.start_time)
            end = datetime.fromtimestamp(event.end_time)
        else:
            start = datetime.fromtimestamp(event.start_time, UTC)
            end = datetime.fromtimestamp(event.end_time, UTC)
        return cls(
            summary=event.summary or "",
            description=event.description,
            location=event.location,
            start_time=start,
            end_time=end,
            is_all_day=event.is_all_day,
            attendees=list(event.attendees),
            status=event.status,
            organizer_email=event.organizer_email,
        )


class UpdateEventInput(BaseModel):
    """Patch payload for updating an event.

    Only explicitly provided fields are applied; see ``provided_fields``.
    """

    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None
    attendees: list[Attendee] | None = None
    status: EventStatus | None = None

    def provided_fields(self) -> set[str]:
        return set(self.model_fields_set)


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
