"""Resource-based provider for CalDAV servers.

Events are whole iCalendar resources addressed by URL and versioned by ETag.
Payloads go through ``localcal.calendar.ical``; writes are conditional
(``If-None-Match: *`` on create, ``If-Match`` on update/delete).

The ``caldav`` library is synchronous, so every session call is run via
``asyncio.to_thread``. The session is created lazily on first use and cached;
its initialization is serialized by an ``asyncio.Lock``.

CalDAV offers no delta primitive that works reliably across servers, so
``sync_events`` is a full refetch of the sync window. Remote deletions are
only visible to a reconciler that prunes events missing from the window.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import caldav
from caldav.elements import dav
from caldav.elements import ical as ical_elements

from localcal.calendar.errors import (
    CalendarConfigError,
    CalendarConflictError,
    CalendarNotFoundError,
    CalendarRequestError,
)
from localcal.calendar.ical import decode_vevent, encode_vevent
from localcal.calendar.models import (
    Calendar,
    ConnectionTestResult,
    CreateEventInput,
    Event,
    SyncResult,
    SyncWindow,
    UpdateEventInput,
)
from localcal.calendar.provider import (
    SYNC_WINDOW_FUTURE_DAYS,
    SYNC_WINDOW_PAST_DAYS,
    CalendarProvider,
    ProviderType,
    connection_failure_message,
)

logger = logging.getLogger(__name__)

ICALENDAR_CONTENT_TYPE = "text/calendar; charset=utf-8"


@dataclass(frozen=True)
class CalDAVCredentials:
    server_url: str | None
    username: str | None
    password: str | None


@dataclass(frozen=True)
class RemoteCollection:
    url: str
    display_name: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class RemoteObject:
    url: str
    data: str | None
    etag: str | None = None


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _raise_for_status(status: int | None, url: str, *, action: str) -> None:
    if status is None or 200 <= status < 300:
        return
    if status == 404:
        raise CalendarNotFoundError(f"Calendar object not found: {url}")
    if status == 412:
        raise CalendarConflictError(f"Calendar object changed on server ({action}): {url}")
    raise CalendarRequestError(status_code=status, message=f"CalDAV {action} failed for {url}")


class CalDAVSession:
    """Blocking CalDAV session; every method is meant for ``asyncio.to_thread``."""

    def __init__(self, server_url: str, username: str | None, password: str) -> None:
        self._client = caldav.DAVClient(url=server_url, username=username, password=password)
        self._principal: Any = None

    def login(self) -> None:
        """Resolve the principal; fails on bad credentials or an unreachable server."""
        self._principal = self._client.principal()

    def calendars(self) -> list[RemoteCollection]:
        if self._principal is None:
            self.login()

        collections: list[RemoteCollection] = []
        for calendar in self._principal.calendars():
            props = calendar.get_properties([dav.DisplayName(), ical_elements.CalendarColor()])
            collections.append(
                RemoteCollection(
                    url=str(calendar.url),
                    display_name=_to_text(props.get(dav.DisplayName.tag)),
                    color=_to_text(props.get(ical_elements.CalendarColor.tag)),
                )
            )
        return collections

    def fetch_objects(
        self, calendar_url: str, start: datetime, end: datetime
    ) -> list[RemoteObject]:
        calendar = self._client.calendar(url=calendar_url)
        results = calendar.search(
            start=start,
            end=end,
            event=True,
            expand=False,
            props=[dav.GetEtag()],
        )
        return [
            RemoteObject(
                url=str(item.url),
                data=_to_text(item.data),
                etag=_to_text((item.props or {}).get(dav.GetEtag.tag)),
            )
            for item in results
        ]

    def fetch_object(self, url: str) -> RemoteObject | None:
        response = self._client.request(url, "GET")
        if response.status == 404:
            return None
        _raise_for_status(response.status, url, action="fetch")
        return RemoteObject(
            url=url,
            data=_to_text(response.raw),
            etag=_to_text(response.headers.get("ETag")),
        )

    def put_object(
        self,
        url: str,
        data: str,
        *,
        etag: str | None = None,
        create: bool = False,
    ) -> str | None:
        """Write a resource and return the new ETag when the server reports one."""
        headers = {"Content-Type": ICALENDAR_CONTENT_TYPE}
        if create:
            headers["If-None-Match"] = "*"
        elif etag:
            headers["If-Match"] = etag
        response = self._client.request(url, "PUT", data, headers)
        _raise_for_status(response.status, url, action="write")
        return _to_text(response.headers.get("ETag"))

    def delete_object(self, url: str, etag: str | None = None) -> None:
        headers = {"If-Match": etag} if etag else {}
        response = self._client.request(url, "DELETE", "", headers)
        if response.status == 404:
            logger.debug("delete_object: %s already gone", url)
            return
        _raise_for_status(response.status, url, action="delete")


SessionFactory = Callable[[str, str | None, str], CalDAVSession]


def _object_url(calendar_url: str, filename: str) -> str:
    if calendar_url.endswith("/"):
        return f"{calendar_url}{filename}"
    return f"{calendar_url}/{filename}"


def merge_event_update(existing: Event, patch: UpdateEventInput) -> CreateEventInput:
    """Apply the provided fields of *patch* on top of a decoded event.

    Fields that are unset (or ``None``) keep the existing decoded value.
    """
    base = CreateEventInput.from_event(existing)
    overrides = {
        name: getattr(patch, name)
        for name in patch.provided_fields()
        if getattr(patch, name) is not None
    }
    return base.model_copy(update=overrides)


class CalDAVProvider(CalendarProvider):
    """Calendar provider for CalDAV servers (iCloud, Fastmail, Nextcloud, ...)."""

    def __init__(
        self,
        account_id: str,
        credentials: CalDAVCredentials,
        *,
        session_factory: SessionFactory = CalDAVSession,
        sync_past_days: int = SYNC_WINDOW_PAST_DAYS,
        sync_future_days: int = SYNC_WINDOW_FUTURE_DAYS,
    ) -> None:
        super().__init__(account_id)
        self._credentials = credentials
        self._session_factory = session_factory
        self._session: CalDAVSession | None = None
        self._session_lock = asyncio.Lock()
        self._sync_past_days = sync_past_days
        self._sync_future_days = sync_future_days

    @property
    def type(self) -> ProviderType:
        return "caldav"

    async def _get_session(self) -> CalDAVSession:
        if self._session is not None:
            return self._session

        async with self._session_lock:
            if self._session is not None:
                return self._session

            credentials = self._credentials
            if not credentials.server_url or not credentials.password:
                raise CalendarConfigError("CalDAV credentials not configured")

            session = self._session_factory(
                credentials.server_url,
                credentials.username,
                credentials.password,
            )
            # A failed login leaves no cached session, so the next call retries.
            await asyncio.to_thread(session.login)
            self._session = session
            logger.info(
                "CalDAV session established for account %r at %s",
                self.account_id,
                credentials.server_url,
            )
            return session

    def reset_session(self) -> None:
        """Drop the cached session so the next call logs in again."""
        self._session = None

    @staticmethod
    def _decode(remote: RemoteObject) -> Event:
        event = decode_vevent(remote.data or "", remote.url)
        return event.model_copy(update={"etag": remote.etag})

    async def list_calendars(self) -> list[Calendar]:
        session = await self._get_session()
        collections = await asyncio.to_thread(session.calendars)
        return [
            Calendar(
                remote_id=collection.url,
                display_name=collection.display_name or f"Calendar {index + 1}",
                color=collection.color,
                # The protocol has no primary flag; the first collection stands in.
                is_primary=index == 0,
            )
            for index, collection in enumerate(collections)
        ]

    async def _fetch_window(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Event]:
        session = await self._get_session()
        objects = await asyncio.to_thread(session.fetch_objects, calendar_id, time_min, time_max)
        return [self._decode(remote) for remote in objects if remote.data]

    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Event]:
        return await self._fetch_window(calendar_id, time_min, time_max)

    async def create_event(self, calendar_id: str, event: CreateEventInput) -> Event:
        session = await self._get_session()
        uid = str(uuid.uuid4())
        ical_data = encode_vevent(event, uid)
        url = _object_url(calendar_id, f"{uid}.ics")

        etag = await asyncio.to_thread(session.put_object, url, ical_data, create=True)
        # The generated text is the source of truth; no re-fetch.
        return self._decode(RemoteObject(url=url, data=ical_data, etag=etag))

    async def update_event(
        self,
        calendar_id: str,
        remote_id: str,
        event: UpdateEventInput,
        etag: str | None = None,
    ) -> Event:
        session = await self._get_session()
        existing = await asyncio.to_thread(session.fetch_object, remote_id)
        if existing is None or not existing.data:
            raise CalendarNotFoundError("Event not found on server")

        parsed = decode_vevent(existing.data, remote_id)
        merged = merge_event_update(parsed, event)
        ical_data = encode_vevent(merged, parsed.uid)

        new_etag = await asyncio.to_thread(
            session.put_object,
            remote_id,
            ical_data,
            etag=etag or existing.etag,
        )
        return self._decode(RemoteObject(url=remote_id, data=ical_data, etag=new_etag))

    async def delete_event(
        self,
        calendar_id: str,
        remote_id: str,
        etag: str | None = None,
    ) -> None:
        session = await self._get_session()
        await asyncio.to_thread(session.delete_object, remote_id, etag)

    async def sync_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
    ) -> SyncResult:
        """Full refetch of the sync window; ``sync_token`` is ignored."""
        window = SyncWindow.around(
            past_days=self._sync_past_days,
            future_days=self._sync_future_days,
        )
        created = await self._fetch_window(calendar_id, window.start, window.end)
        logger.debug("Refetched calendar %r: %d resources", calendar_id, len(created))
        return SyncResult(created=created, window=window)

    async def test_connection(self) -> ConnectionTestResult:
        try:
            session = await self._get_session()
            collections = await asyncio.to_thread(session.calendars)
        except Exception as exc:
            self.reset_session()
            return ConnectionTestResult(success=False, message=connection_failure_message(exc))

        count = len(collections)
        plural = "" if count == 1 else "s"
        return ConnectionTestResult(
            success=True, message=f"Connected, found {count} calendar{plural}"
        )

    async def shutdown(self) -> None:
        self.reset_session()
