"""Token-based provider for the Google Calendar v3 REST API.

The provider never authenticates by itself: it is handed a ``JsonRequester``
(an authenticated ``request(url, method=..., body=...) -> JSON`` callable).
``HttpxJsonRequester`` is the default implementation; it expects an
access-token provider and handles bearer auth, one forced refresh on 401 and
bounded backoff on 429/503.

Incremental sync follows Google's ``syncToken`` / ``nextPageToken`` /
``nextSyncToken`` flow. An expired token (410 Gone) is reported as
``SyncResult.empty()`` instead of an exception.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime
from typing import Any, Protocol
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfoNotFoundError

import httpx
import tzlocal

from localcal.calendar.errors import CalendarError, CalendarRequestError
from localcal.calendar.ical import DEFAULT_EVENT_DURATION_SECONDS
from localcal.calendar.models import (
    Attendee,
    Calendar,
    ConnectionTestResult,
    CreateEventInput,
    Event,
    EventStatus,
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

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
MAX_RESULTS_PER_PAGE = 250

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Status code Google uses for an invalidated sync token.
SYNC_TOKEN_EXPIRED_STATUS = 410
_SYNC_TOKEN_EXPIRED_MARKERS = ("410", "sync token")


def local_timezone_name() -> str:
    """IANA name of the host's time zone, falling back to ``UTC``."""
    try:
        return tzlocal.get_localzone_name() or "UTC"
    except ZoneInfoNotFoundError as exc:
        logger.warning("Could not determine the local time zone, using UTC: %s", exc)
        return "UTC"


class JsonRequester(Protocol):
    """Authenticated JSON request function consumed by the provider.

    Must raise (preferably ``CalendarRequestError``) on a non-success status,
    with the status code in the error message.
    """

    async def __call__(
        self,
        url: str,
        *,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any: ...


class AccessTokenProvider(Protocol):
    async def __call__(self, *, force_refresh: bool = False) -> str: ...


class StaticAccessToken:
    """Access-token provider returning a fixed token (no refresh support)."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def __call__(self, *, force_refresh: bool = False) -> str:
        return self._token


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class HttpxJsonRequester:
    """``JsonRequester`` backed by ``httpx.AsyncClient`` with bearer auth."""

    def __init__(
        self,
        access_token: AccessTokenProvider,
        http_client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
    ) -> None:
        self._access_token = access_token
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def __call__(
        self,
        url: str,
        *,
        method: str = "GET",
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        response = await self._request_with_bearer(
            method=method, url=url, json_body=body, extra_headers=headers
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            return response.json()
        except ValueError as exc:
            raise CalendarError(
                "Calendar API returned invalid JSON for a successful response"
            ) from exc

    async def _request_with_bearer(
        self,
        *,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        response = await self._request_once(
            method=method,
            url=url,
            json_body=json_body,
            extra_headers=extra_headers,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                method=method,
                url=url,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=True,
            )

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method,
                url=url,
                json_body=json_body,
                extra_headers=extra_headers,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._access_token(force_refresh=force_refresh)
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(method, url, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            raise CalendarError(f"Calendar request failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


# ---------------------------------------------------------------------------
# JSON <-> canonical mapping
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value if value.strip() else None


def _parse_google_boundary(payload: Any) -> tuple[int, bool] | None:
    """Return ``(epoch_seconds, is_date_only)`` for a start/end object."""
    if not isinstance(payload, dict):
        return None

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return int(_parse_google_datetime(date_time).timestamp()), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        # Date-only boundaries are local midnight, matching the iCalendar codec.
        return int(datetime(parsed.year, parsed.month, parsed.day).timestamp()), True

    return None


def _extract_google_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("email")
        if not isinstance(email, str) or not email.strip():
            continue
        attendees.append(
            Attendee(
                email=email.strip(),
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_normalize_optional_text(entry.get("responseStatus")),
            )
        )
    return attendees


def _extract_google_organizer(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    email = payload.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    return None


def google_event_to_event(payload: dict[str, Any]) -> Event:
    """Map a Google Calendar event resource onto the canonical ``Event``."""
    event_id = payload.get("id")
    if not isinstance(event_id, str) or not event_id.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start = _parse_google_boundary(payload.get("start"))
    end = _parse_google_boundary(payload.get("end"))
    start_time = start[0] if start is not None else 0
    end_time = end[0] if end is not None else start_time + DEFAULT_EVENT_DURATION_SECONDS

    return Event(
        remote_id=event_id.strip(),
        uid=_normalize_optional_text(payload.get("iCalUID")),
        etag=_normalize_optional_text(payload.get("etag")),
        summary=_normalize_optional_text(payload.get("summary")),
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_time=start_time,
        end_time=end_time,
        is_all_day=bool(start is not None and start[1]),
        status=EventStatus.parse(payload.get("status")),
        organizer_email=_extract_google_organizer(payload.get("organizer")),
        attendees=_extract_google_attendees(payload.get("attendees")),
        html_link=_normalize_optional_text(payload.get("htmlLink")),
    )


def _attendees_to_google(attendees: list[Attendee]) -> list[dict[str, Any]]:
    result: list[dict[str, Any]] = []
    for attendee in attendees:
        entry: dict[str, Any] = {"email": attendee.email}
        if attendee.display_name is not None:
            entry["displayName"] = attendee.display_name
        result.append(entry)
    return result


def _boundary_body(value: datetime, *, all_day: bool, timezone: str) -> dict[str, str]:
    if all_day:
        return {"date": value.date().isoformat()}
    return {"dateTime": _google_rfc3339(value), "timeZone": timezone}


def build_google_event_body(event: CreateEventInput, *, timezone: str) -> dict[str, Any]:
    """Translate a ``CreateEventInput`` into a Google Calendar event body."""
    body: dict[str, Any] = {"summary": event.summary}
    if event.description is not None:
        body["description"] = event.description
    if event.location is not None:
        body["location"] = event.location

    body["start"] = _boundary_body(event.start_time, all_day=event.is_all_day, timezone=timezone)
    body["end"] = _boundary_body(event.end_time, all_day=event.is_all_day, timezone=timezone)

    if event.attendees:
        body["attendees"] = _attendees_to_google(event.attendees)
    if event.status is not None:
        body["status"] = event.status.value
    return body


def build_google_event_patch_body(patch: UpdateEventInput, *, timezone: str) -> dict[str, Any]:
    """Translate an ``UpdateEventInput`` into a partial (PATCH) body.

    Only explicitly provided fields are emitted. Start and end are sent
    together, and only when both are provided.
    """
    provided = patch.provided_fields()
    body: dict[str, Any] = {}

    for field_name in ("summary", "description", "location"):
        if field_name in provided:
            body[field_name] = getattr(patch, field_name)

    if patch.start_time is not None and patch.end_time is not None:
        all_day = bool(patch.is_all_day)
        body["start"] = _boundary_body(patch.start_time, all_day=all_day, timezone=timezone)
        body["end"] = _boundary_body(patch.end_time, all_day=all_day, timezone=timezone)

    if patch.attendees is not None:
        body["attendees"] = _attendees_to_google(patch.attendees)
    if patch.status is not None:
        body["status"] = patch.status.value
    return body


def is_sync_token_expired(exc: BaseException) -> bool:
    """Whether *exc* signals that the replayed sync token is no longer valid."""
    if isinstance(exc, CalendarRequestError) and exc.status_code == SYNC_TOKEN_EXPIRED_STATUS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _SYNC_TOKEN_EXPIRED_MARKERS)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class GoogleCalendarProvider(CalendarProvider):
    """Calendar provider for the Google Calendar REST API.

    Timed events are written with ``timezone``, or with the host's local zone
    when none is given.
    """

    def __init__(
        self,
        account_id: str,
        request: JsonRequester,
        *,
        timezone: str | None = None,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        sync_past_days: int = SYNC_WINDOW_PAST_DAYS,
        sync_future_days: int = SYNC_WINDOW_FUTURE_DAYS,
    ) -> None:
        super().__init__(account_id)
        self._request = request
        self._timezone = timezone or local_timezone_name()
        self._base_url = base_url.rstrip("/")
        self._sync_past_days = sync_past_days
        self._sync_future_days = sync_future_days

    @property
    def type(self) -> ProviderType:
        return "google_api"

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{self._base_url}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is not None:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    async def list_calendars(self) -> list[Calendar]:
        payload = await self._request(f"{self._base_url}/users/me/calendarList")
        items = payload.get("items") if isinstance(payload, dict) else None

        calendars: list[Calendar] = []
        for item in items or []:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                continue
            summary = item.get("summary")
            calendars.append(
                Calendar(
                    remote_id=item["id"],
                    display_name=summary if isinstance(summary, str) else item["id"],
                    color=_normalize_optional_text(item.get("backgroundColor")),
                    is_primary=item.get("primary") is True,
                )
            )
        return calendars

    async def fetch_events(
        self,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[Event]:
        params = {
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(MAX_RESULTS_PER_PAGE),
        }
        payload = await self._request(f"{self._events_url(calendar_id)}?{urlencode(params)}")
        items = payload.get("items") if isinstance(payload, dict) else None
        return [google_event_to_event(item) for item in items or [] if isinstance(item, dict)]

    async def create_event(self, calendar_id: str, event: CreateEventInput) -> Event:
        body = build_google_event_body(event, timezone=self._timezone)
        created = await self._request(self._events_url(calendar_id), method="POST", body=body)
        return google_event_to_event(created)

    async def update_event(
        self,
        calendar_id: str,
        remote_id: str,
        event: UpdateEventInput,
        etag: str | None = None,
    ) -> Event:
        body = build_google_event_patch_body(event, timezone=self._timezone)
        headers = {"If-Match": etag} if etag else None
        updated = await self._request(
            self._events_url(calendar_id, remote_id),
            method="PATCH",
            body=body,
            headers=headers,
        )
        return google_event_to_event(updated)

    async def delete_event(
        self,
        calendar_id: str,
        remote_id: str,
        etag: str | None = None,
    ) -> None:
        headers = {"If-Match": etag} if etag else None
        try:
            await self._request(
                self._events_url(calendar_id, remote_id),
                method="DELETE",
                headers=headers,
            )
        except CalendarRequestError as exc:
            # Already gone remotely.
            if exc.status_code not in (404, 410):
                raise
            logger.debug(
                "delete_event: event %r not found (status=%d); treating as deleted",
                remote_id,
                exc.status_code,
            )

    async def sync_events(
        self,
        calendar_id: str,
        sync_token: str | None = None,
    ) -> SyncResult:
        """Incremental sync using ``syncToken`` and the page-token loop.

        Without a token the window is 90 days back to 365 days ahead with
        single-event expansion. With a token, the token alone defines the
        change set. Cancelled items are deletions; everything else lands in
        ``created`` because the caller's upsert is idempotent.
        """
        base_params: dict[str, str] = {"maxResults": str(MAX_RESULTS_PER_PAGE)}
        window: SyncWindow | None = None
        if sync_token:
            base_params["syncToken"] = sync_token
        else:
            window = SyncWindow.around(
                past_days=self._sync_past_days,
                future_days=self._sync_future_days,
            )
            base_params["timeMin"] = _google_rfc3339(window.start)
            base_params["timeMax"] = _google_rfc3339(window.end)
            base_params["singleEvents"] = "true"

        created: list[Event] = []
        deleted_remote_ids: list[str] = []
        next_sync_token: str | None = None
        page_token: str | None = None
        events_url = self._events_url(calendar_id)

        while True:
            params = dict(base_params)
            if page_token:
                params["pageToken"] = page_token

            try:
                payload = await self._request(f"{events_url}?{urlencode(params)}")
            except Exception as exc:
                if is_sync_token_expired(exc):
                    logger.info(
                        "Sync token expired for calendar %r; full resync required",
                        calendar_id,
                    )
                    return SyncResult.empty()
                raise

            if not isinstance(payload, dict):
                raise CalendarError("Google Calendar sync response has unexpected payload shape")

            for item in payload.get("items") or []:
                if not isinstance(item, dict):
                    continue
                item_id = item.get("id")
                if not isinstance(item_id, str) or not item_id.strip():
                    continue
                if EventStatus.parse(item.get("status")) == EventStatus.cancelled:
                    deleted_remote_ids.append(item_id.strip())
                else:
                    created.append(google_event_to_event(item))

            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token.strip():
                next_sync_token = candidate_sync_token.strip()

            next_page = payload.get("nextPageToken")
            page_token = next_page if isinstance(next_page, str) and next_page else None
            if page_token is None:
                break

        logger.debug(
            "Synced calendar %r: %d upserts, %d deletions",
            calendar_id,
            len(created),
            len(deleted_remote_ids),
        )
        return SyncResult(
            created=created,
            deleted_remote_ids=deleted_remote_ids,
            new_sync_token=next_sync_token,
            window=window,
        )

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self.list_calendars()
        except Exception as exc:
            return ConnectionTestResult(success=False, message=connection_failure_message(exc))
        return ConnectionTestResult(success=True, message="Connected to Google Calendar")

    async def shutdown(self) -> None:
        close = getattr(self._request, "aclose", None)
        if close is not None:
            await close()
