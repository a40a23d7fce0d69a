"""Unit tests for CalDAVProvider and CalDAVSession.

Provider tests run against the in-memory ``caldav_server`` fixture; session
tests patch ``caldav.DAVClient`` and check the raw DAV requests.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from unittest.mock import MagicMock

import pytest
from caldav.elements import dav
from caldav.elements import ical as ical_elements

from localcal.calendar import caldav_provider
from localcal.calendar.caldav_provider import (
    CalDAVCredentials,
    CalDAVProvider,
    CalDAVSession,
    merge_event_update,
)
from localcal.calendar.errors import (
    CalendarConfigError,
    CalendarConflictError,
    CalendarNotFoundError,
    CalendarRequestError,
)
from localcal.calendar.ical import decode_vevent
from localcal.calendar.models import (
    Attendee,
    CreateEventInput,
    EventStatus,
    SyncResult,
    UpdateEventInput,
)

pytestmark = pytest.mark.unit

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

CALENDAR_URL = "https://dav.example.com/calendars/me/work/"

EXISTING_ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VEVENT",
        "UID:existing-uid",
        "SUMMARY:Dentist",
        "LOCATION:Main St 1",
        "DTSTART:20250620T140000Z",
        "DTEND:20250620T150000Z",
        "STATUS:TENTATIVE",
        "ORGANIZER:mailto:me@example.com",
        'ATTENDEE;CN="Jane";PARTSTAT=ACCEPTED:mailto:jane@example.com',
        "END:VEVENT",
        "END:VCALENDAR",
    ]
)


def _credentials(**overrides) -> CalDAVCredentials:
    values = {
        "server_url": "https://dav.example.com/",
        "username": "me@example.com",
        "password": "app-password",
    }
    values.update(overrides)
    return CalDAVCredentials(**values)


def _make_provider(server, **overrides) -> CalDAVProvider:
    return CalDAVProvider(
        "acct-dav",
        _credentials(**overrides),
        session_factory=server.session_factory,
    )


def _epoch(*args) -> int:
    return int(datetime(*args, tzinfo=UTC).timestamp())


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    @pytest.mark.parametrize(
        "overrides",
        [{"server_url": None}, {"password": None}, {"password": ""}],
    )
    async def test_missing_credentials_fail_before_network(self, caldav_server, overrides):
        provider = _make_provider(caldav_server, **overrides)

        with pytest.raises(CalendarConfigError, match="CalDAV credentials not configured"):
            await provider.list_calendars()

        assert caldav_server.sessions == []

    async def test_session_is_created_lazily_once(self, caldav_server):
        caldav_server.add_calendar(CALENDAR_URL, "Work")
        provider = _make_provider(caldav_server)

        assert caldav_server.sessions == []

        await provider.list_calendars()
        await provider.list_calendars()

        assert len(caldav_server.sessions) == 1
        session = caldav_server.sessions[0]
        assert session.logins == 1
        assert (session.server_url, session.username, session.password) == (
            "https://dav.example.com/",
            "me@example.com",
            "app-password",
        )

    async def test_concurrent_first_use_creates_one_session(self, caldav_server):
        caldav_server.add_calendar(CALENDAR_URL, "Work")
        provider = _make_provider(caldav_server)

        await asyncio.gather(*(provider.list_calendars() for _ in range(5)))

        assert len(caldav_server.sessions) == 1

    async def test_failed_login_is_not_cached(self, caldav_server):
        caldav_server.login_error = RuntimeError("401 Unauthorized")
        provider = _make_provider(caldav_server)

        with pytest.raises(RuntimeError, match="401"):
            await provider.list_calendars()

        caldav_server.login_error = None
        await provider.list_calendars()

        assert len(caldav_server.sessions) == 2

    async def test_reset_session_forces_new_login(self, caldav_server):
        provider = _make_provider(caldav_server)
        await provider.list_calendars()

        provider.reset_session()
        await provider.list_calendars()

        assert len(caldav_server.sessions) == 2

    async def test_type(self, caldav_server):
        assert _make_provider(caldav_server).type == "caldav"


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestListCalendars:
    async def test_first_calendar_is_primary_and_names_fall_back(self, caldav_server):
        caldav_server.add_calendar(CALENDAR_URL, "Work", "#FF0000FF")
        caldav_server.add_calendar("https://dav.example.com/calendars/me/other/")
        provider = _make_provider(caldav_server)

        calendars = await provider.list_calendars()

        assert [(c.remote_id, c.display_name, c.color, c.is_primary) for c in calendars] == [
            (CALENDAR_URL, "Work", "#FF0000FF", True),
            ("https://dav.example.com/calendars/me/other/", "Calendar 2", None, False),
        ]


class TestFetchEvents:
    async def test_decodes_resources_with_url_and_etag(self, caldav_server):
        caldav_server.add_object(f"{CALENDAR_URL}a.ics", EXISTING_ICS, '"e-a"')
        caldav_server.add_object(f"{CALENDAR_URL}empty.ics", None, '"e-empty"')
        caldav_server.add_object("https://dav.example.com/calendars/me/other/b.ics", EXISTING_ICS)
        provider = _make_provider(caldav_server)
        time_min = datetime(2025, 6, 1, tzinfo=UTC)
        time_max = datetime(2025, 7, 1, tzinfo=UTC)

        events = await provider.fetch_events(CALENDAR_URL, time_min, time_max)

        assert caldav_server.searches == [(CALENDAR_URL, time_min, time_max)]
        assert len(events) == 1
        event = events[0]
        assert event.remote_id == f"{CALENDAR_URL}a.ics"
        assert event.etag == '"e-a"'
        assert event.uid == "existing-uid"
        assert event.summary == "Dentist"
        assert event.start_time == _epoch(2025, 6, 20, 14)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestCreateEvent:
    async def test_put_with_if_none_match_and_decoded_result(self, caldav_server):
        provider = _make_provider(caldav_server)

        created = await provider.create_event(
            CALENDAR_URL,
            CreateEventInput(
                summary="Team Meeting",
                start_time="2025-06-20T14:00:00Z",
                end_time="2025-06-20T15:00:00Z",
                attendees=[Attendee(email="jane@example.com")],
            ),
        )

        put = caldav_server.puts[0]
        assert put["create"] is True
        assert put["url"] == f"{CALENDAR_URL}{created.uid}.ics"
        assert f"UID:{created.uid}" in put["data"]
        assert created.remote_id == put["url"]
        assert created.etag == '"etag-1"'
        assert created.summary == "Team Meeting"
        assert created.start_time == _epoch(2025, 6, 20, 14)
        assert created.end_time == _epoch(2025, 6, 20, 15)
        assert created.attendees == [Attendee(email="jane@example.com")]
        assert created.raw_payload == put["data"]

    async def test_calendar_url_without_trailing_slash(self, caldav_server):
        provider = _make_provider(caldav_server)

        created = await provider.create_event(
            CALENDAR_URL.rstrip("/"),
            CreateEventInput(
                summary="x",
                start_time="2025-06-20T14:00:00Z",
                end_time="2025-06-20T15:00:00Z",
            ),
        )

        assert created.remote_id == f"{CALENDAR_URL}{created.uid}.ics"


class TestUpdateEvent:
    async def test_merges_only_provided_fields(self, caldav_server):
        url = f"{CALENDAR_URL}existing.ics"
        caldav_server.add_object(url, EXISTING_ICS, '"e-1"')
        provider = _make_provider(caldav_server)

        updated = await provider.update_event(
            CALENDAR_URL, url, UpdateEventInput(summary="Dentist (moved)")
        )

        put = caldav_server.puts[0]
        assert put["url"] == url
        assert put["etag"] == '"e-1"'
        assert put["create"] is False
        assert updated.uid == "existing-uid"
        assert updated.summary == "Dentist (moved)"
        assert updated.location == "Main St 1"
        assert updated.status == EventStatus.tentative
        assert updated.organizer_email == "me@example.com"
        assert [a.email for a in updated.attendees] == ["jane@example.com"]
        assert updated.attendees[0].display_name == "Jane"
        assert updated.attendees[0].response_status == "accepted"
        assert "PARTSTAT=ACCEPTED" in put["data"]
        assert updated.start_time == _epoch(2025, 6, 20, 14)
        assert updated.end_time == _epoch(2025, 6, 20, 15)
        assert updated.etag == '"etag-1"'

    async def test_supplied_etag_wins(self, caldav_server):
        url = f"{CALENDAR_URL}existing.ics"
        caldav_server.add_object(url, EXISTING_ICS, '"e-1"')
        provider = _make_provider(caldav_server)

        with pytest.raises(CalendarConflictError):
            await provider.update_event(
                CALENDAR_URL, url, UpdateEventInput(location="Elsewhere"), etag='"stale"'
            )

        assert caldav_server.puts[0]["etag"] == '"stale"'

    async def test_new_times_are_applied(self, caldav_server):
        url = f"{CALENDAR_URL}existing.ics"
        caldav_server.add_object(url, EXISTING_ICS, '"e-1"')
        provider = _make_provider(caldav_server)

        updated = await provider.update_event(
            CALENDAR_URL,
            url,
            UpdateEventInput(
                start_time=datetime(2025, 6, 21, 9, tzinfo=UTC),
                end_time=datetime(2025, 6, 21, 10, tzinfo=UTC),
            ),
        )

        assert updated.start_time == _epoch(2025, 6, 21, 9)
        assert updated.end_time == _epoch(2025, 6, 21, 10)
        assert updated.summary == "Dentist"

    async def test_missing_resource_raises_not_found(self, caldav_server):
        provider = _make_provider(caldav_server)

        with pytest.raises(CalendarNotFoundError, match="Event not found on server"):
            await provider.update_event(
                CALENDAR_URL, f"{CALENDAR_URL}gone.ics", UpdateEventInput(summary="x")
            )

        assert caldav_server.puts == []


class TestDeleteEvent:
    async def test_delete_passes_etag(self, caldav_server):
        url = f"{CALENDAR_URL}existing.ics"
        caldav_server.add_object(url, EXISTING_ICS, '"e-1"')
        provider = _make_provider(caldav_server)

        await provider.delete_event(CALENDAR_URL, url, '"e-1"')

        assert caldav_server.deletes == [(url, '"e-1"')]
        assert url not in caldav_server.objects


class TestMergeEventUpdate:
    def test_none_values_keep_existing(self):
        existing = decode_vevent(EXISTING_ICS, "u")

        merged = merge_event_update(existing, UpdateEventInput(summary=None, location="New"))

        assert merged.summary == "Dentist"
        assert merged.location == "New"

    def test_all_day_dates_survive(self):
        existing = decode_vevent(
            "BEGIN:VEVENT\r\nUID:x\r\nDTSTART;VALUE=DATE:20250704\r\n"
            "DTEND;VALUE=DATE:20250705\r\nEND:VEVENT",
            "u",
        )

        merged = merge_event_update(existing, UpdateEventInput(summary="Holiday"))

        assert merged.is_all_day is True
        assert merged.start_time.date() == date(2025, 7, 4)
        assert merged.end_time.date() == date(2025, 7, 5)


# ---------------------------------------------------------------------------
# Sync and connection test
# ---------------------------------------------------------------------------


class TestSyncEvents:
    async def test_full_refetch_of_window(self, caldav_server):
        caldav_server.add_object(f"{CALENDAR_URL}a.ics", EXISTING_ICS, '"e-a"')
        provider = _make_provider(caldav_server)

        before = int(datetime.now(UTC).timestamp())
        result = await provider.sync_events(CALENDAR_URL, "ignored-token")

        assert [e.remote_id for e in result.created] == [f"{CALENDAR_URL}a.ics"]
        assert result.updated == []
        assert result.deleted_remote_ids == []
        assert result.new_sync_token is None
        assert result.new_ctag is None
        assert result.needs_full_resync is False
        assert abs((before - result.window.start_time) - 90 * 86400) < 60
        assert abs((result.window.end_time - before) - 365 * 86400) < 60
        _, start, end = caldav_server.searches[0]
        assert int(start.timestamp()) == result.window.start_time
        assert int(end.timestamp()) == result.window.end_time

    async def test_empty_calendar_is_not_a_resync_signal(self, caldav_server):
        provider = _make_provider(caldav_server)

        result = await provider.sync_events(CALENDAR_URL)

        assert result != SyncResult.empty()
        assert result.needs_full_resync is False


class TestConnection:
    async def test_success_counts_calendars(self, caldav_server):
        caldav_server.add_calendar(CALENDAR_URL, "Work")
        caldav_server.add_calendar("https://dav.example.com/calendars/me/home/", "Home")

        result = await _make_provider(caldav_server).test_connection()

        assert result.success is True
        assert result.message == "Connected, found 2 calendars"

    async def test_singular(self, caldav_server):
        caldav_server.add_calendar(CALENDAR_URL, "Work")

        result = await _make_provider(caldav_server).test_connection()

        assert result.message == "Connected, found 1 calendar"

    async def test_failure_resets_session(self, caldav_server):
        provider = _make_provider(caldav_server)
        await provider.list_calendars()
        caldav_server.calendars_error = RuntimeError("Server returned 503")

        result = await provider.test_connection()

        assert result.success is False
        assert result.message == "Server returned 503"

        caldav_server.calendars_error = None
        await provider.list_calendars()
        assert len(caldav_server.sessions) == 2

    async def test_config_error_is_reported(self, caldav_server):
        result = await _make_provider(caldav_server, password=None).test_connection()

        assert result.success is False
        assert result.message == "CalDAV credentials not configured"


# ---------------------------------------------------------------------------
# CalDAVSession against a mocked caldav client
# ---------------------------------------------------------------------------


def _dav_response(status: int, headers: dict | None = None, raw: str = "") -> MagicMock:
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.raw = raw
    return response


@pytest.fixture
def dav_client(monkeypatch) -> MagicMock:
    client = MagicMock()
    monkeypatch.setattr(caldav_provider.caldav, "DAVClient", MagicMock(return_value=client))
    return client


class TestCalDAVSession:
    def test_constructs_client_with_credentials(self, dav_client):
        CalDAVSession("https://dav.example.com/", "me", "pw")

        caldav_provider.caldav.DAVClient.assert_called_once_with(
            url="https://dav.example.com/", username="me", password="pw"
        )

    def test_calendars_reads_display_name_and_color(self, dav_client):
        remote = MagicMock()
        remote.url = CALENDAR_URL
        remote.get_properties.return_value = {
            dav.DisplayName.tag: "Work",
            ical_elements.CalendarColor.tag: "#00FF00",
        }
        dav_client.principal.return_value.calendars.return_value = [remote]

        collections = CalDAVSession("https://dav.example.com/", "me", "pw").calendars()

        assert len(collections) == 1
        assert collections[0].url == CALENDAR_URL
        assert collections[0].display_name == "Work"
        assert collections[0].color == "#00FF00"

    def test_fetch_objects_uses_time_range_search(self, dav_client):
        item = MagicMock()
        item.url = f"{CALENDAR_URL}a.ics"
        item.data = EXISTING_ICS
        item.props = {dav.GetEtag.tag: '"e-a"'}
        calendar = dav_client.calendar.return_value
        calendar.search.return_value = [item]
        start = datetime(2025, 6, 1, tzinfo=UTC)
        end = datetime(2025, 7, 1, tzinfo=UTC)

        objects = CalDAVSession("https://dav.example.com/", "me", "pw").fetch_objects(
            CALENDAR_URL, start, end
        )

        dav_client.calendar.assert_called_once_with(url=CALENDAR_URL)
        kwargs = calendar.search.call_args.kwargs
        assert (kwargs["start"], kwargs["end"], kwargs["event"]) == (start, end, True)
        assert objects[0].url == f"{CALENDAR_URL}a.ics"
        assert objects[0].data == EXISTING_ICS
        assert objects[0].etag == '"e-a"'

    def test_put_create_uses_if_none_match(self, dav_client):
        dav_client.request.return_value = _dav_response(201, {"ETag": '"new"'})

        etag = CalDAVSession("https://dav.example.com/", "me", "pw").put_object(
            f"{CALENDAR_URL}x.ics", "DATA", create=True
        )

        url, method, body, headers = dav_client.request.call_args.args
        assert (url, method, body) == (f"{CALENDAR_URL}x.ics", "PUT", "DATA")
        assert headers["If-None-Match"] == "*"
        assert "If-Match" not in headers
        assert headers["Content-Type"].startswith("text/calendar")
        assert etag == '"new"'

    def test_put_update_uses_if_match(self, dav_client):
        dav_client.request.return_value = _dav_response(204)

        etag = CalDAVSession("https://dav.example.com/", "me", "pw").put_object(
            f"{CALENDAR_URL}x.ics", "DATA", etag='"old"'
        )

        headers = dav_client.request.call_args.args[3]
        assert headers["If-Match"] == '"old"'
        assert "If-None-Match" not in headers
        assert etag is None

    @pytest.mark.parametrize(
        ("status", "error"),
        [
            (412, CalendarConflictError),
            (404, CalendarNotFoundError),
            (500, CalendarRequestError),
        ],
    )
    def test_put_errors(self, dav_client, status, error):
        dav_client.request.return_value = _dav_response(status)

        with pytest.raises(error) as exc_info:
            CalDAVSession("https://dav.example.com/", "me", "pw").put_object(
                f"{CALENDAR_URL}x.ics", "DATA", etag='"old"'
            )
        assert exc_info.value.status_code == status

    def test_fetch_object_missing_returns_none(self, dav_client):
        dav_client.request.return_value = _dav_response(404)

        session = CalDAVSession("https://dav.example.com/", "me", "pw")

        assert session.fetch_object(f"{CALENDAR_URL}gone.ics") is None

    def test_fetch_object_returns_data_and_etag(self, dav_client):
        dav_client.request.return_value = _dav_response(200, {"ETag": '"e"'}, EXISTING_ICS)

        obj = CalDAVSession("https://dav.example.com/", "me", "pw").fetch_object(
            f"{CALENDAR_URL}a.ics"
        )

        assert dav_client.request.call_args.args == (f"{CALENDAR_URL}a.ics", "GET")
        assert obj.data == EXISTING_ICS
        assert obj.etag == '"e"'

    def test_delete_missing_is_ok(self, dav_client):
        dav_client.request.return_value = _dav_response(404)

        CalDAVSession("https://dav.example.com/", "me", "pw").delete_object(
            f"{CALENDAR_URL}gone.ics", '"e"'
        )

        assert dav_client.request.call_args.args[3] == {"If-Match": '"e"'}

    def test_delete_precondition_failure_raises(self, dav_client):
        dav_client.request.return_value = _dav_response(412)

        with pytest.raises(CalendarConflictError):
            CalDAVSession("https://dav.example.com/", "me", "pw").delete_object(
                f"{CALENDAR_URL}x.ics", '"stale"'
            )
