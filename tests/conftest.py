"""Shared test fixtures for the localcal test suite."""

from __future__ import annotations

from datetime import datetime

import pytest

from localcal.calendar.caldav_provider import RemoteCollection, RemoteObject
from localcal.calendar.errors import CalendarConflictError
from localcal.testing import MemoryCalendarCache


class FakeCalDAVSession:
    """Stands in for ``CalDAVSession``; all state lives on the owning server."""

    def __init__(
        self,
        server: FakeCalDAVServer,
        server_url: str,
        username: str | None,
        password: str,
    ) -> None:
        self.server = server
        self.server_url = server_url
        self.username = username
        self.password = password
        self.logins = 0

    def login(self) -> None:
        self.logins += 1
        if self.server.login_error is not None:
            raise self.server.login_error

    def calendars(self) -> list[RemoteCollection]:
        if self.server.calendars_error is not None:
            raise self.server.calendars_error
        return list(self.server.collections)

    def fetch_objects(
        self, calendar_url: str, start: datetime, end: datetime
    ) -> list[RemoteObject]:
        self.server.searches.append((calendar_url, start, end))
        return [obj for url, obj in self.server.objects.items() if url.startswith(calendar_url)]

    def fetch_object(self, url: str) -> RemoteObject | None:
        return self.server.objects.get(url)

    def put_object(
        self,
        url: str,
        data: str,
        *,
        etag: str | None = None,
        create: bool = False,
    ) -> str | None:
        self.server.puts.append({"url": url, "data": data, "etag": etag, "create": create})
        existing = self.server.objects.get(url)
        if create and existing is not None:
            raise CalendarConflictError(f"Calendar object already exists: {url}")
        if etag is not None and existing is not None and existing.etag != etag:
            raise CalendarConflictError(f"Calendar object changed on server (write): {url}")
        new_etag = self.server.next_etag()
        self.server.objects[url] = RemoteObject(url=url, data=data, etag=new_etag)
        return new_etag

    def delete_object(self, url: str, etag: str | None = None) -> None:
        self.server.deletes.append((url, etag))
        self.server.objects.pop(url, None)


class FakeCalDAVServer:
    """In-memory CalDAV server; ``session_factory`` plugs into ``CalDAVProvider``."""

    def __init__(self) -> None:
        self.collections: list[RemoteCollection] = []
        self.objects: dict[str, RemoteObject] = {}
        self.sessions: list[FakeCalDAVSession] = []
        self.searches: list[tuple[str, datetime, datetime]] = []
        self.puts: list[dict] = []
        self.deletes: list[tuple[str, str | None]] = []
        self.login_error: Exception | None = None
        self.calendars_error: Exception | None = None
        self._etag_counter = 0

    def next_etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter}"'

    def add_calendar(
        self,
        url: str,
        display_name: str | None = None,
        color: str | None = None,
    ) -> None:
        self.collections.append(RemoteCollection(url=url, display_name=display_name, color=color))

    def add_object(self, url: str, data: str | None, etag: str | None = None) -> None:
        self.objects[url] = RemoteObject(url=url, data=data, etag=etag)

    def session_factory(
        self,
        server_url: str,
        username: str | None,
        password: str,
    ) -> FakeCalDAVSession:
        session = FakeCalDAVSession(self, server_url, username, password)
        self.sessions.append(session)
        return session


@pytest.fixture
def caldav_server() -> FakeCalDAVServer:
    """Provide an empty in-memory CalDAV server."""
    return FakeCalDAVServer()


@pytest.fixture
def memory_cache() -> MemoryCalendarCache:
    return MemoryCalendarCache()
