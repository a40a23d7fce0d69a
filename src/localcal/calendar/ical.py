"""iCalendar (RFC 5545) codec for single-VEVENT resources.

``encode_vevent`` renders a ``CreateEventInput`` as a CRLF-delimited
VCALENDAR/VEVENT block; ``decode_vevent`` reads such a block back into an
``Event``. Content lines, parameter quoting and line folding are handled by
``icalendar``'s parser primitives; the event mapping on top of them is ours.

Decoding is total: any syntactically parseable block yields an ``Event``.
Missing or malformed values are replaced by documented defaults (start at
epoch zero, end one hour after start, a generated id) because one bad
resource must not abort a batch sync.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime

from icalendar.parser import Contentline, Contentlines, Parameters, q_split
from icalendar.prop import vCalAddress

from localcal.calendar.models import Attendee, CreateEventInput, Event, EventStatus

logger = logging.getLogger(__name__)

PRODID = "-//localcal//CalDAV Client//EN"
LINE_SEPARATOR = "\r\n"
DEFAULT_EVENT_DURATION_SECONDS = 3600

# Order matters: backslash first, otherwise later substitutions get re-escaped.
_TEXT_ESCAPES = (
    ("\\", "\\\\"),
    (";", "\\;"),
    (",", "\\,"),
    ("\n", "\\n"),
)
_TEXT_UNESCAPES = {"\\": "\\", ";": ";", ",": ",", "n": "\n", "N": "\n"}
_UNESCAPE_PATTERN = re.compile(r"\\([\\;,nN])")
_LONE_CR_PATTERN = re.compile(r"\r(?!\n)")
_MAILTO_PATTERN = re.compile(r"mailto:(.+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Text escaping
# ---------------------------------------------------------------------------


def escape_text(text: str) -> str:
    """Escape a TEXT value (summary, description, location).

    CRLF and lone CR are written as a single ``\\n``; line breaks always decode
    back as LF.
    """
    escaped = text.replace("\r\n", "\n").replace("\r", "\n")
    for raw, replacement in _TEXT_ESCAPES:
        escaped = escaped.replace(raw, replacement)
    return escaped


def unescape_text(text: str) -> str:
    """Exact inverse of ``escape_text``.

    A single left-to-right pass, so ``\\\\n`` decodes to a backslash followed
    by ``n`` rather than a backslash followed by a newline.
    """
    return _UNESCAPE_PATTERN.sub(lambda match: _TEXT_UNESCAPES[match.group(1)], text)


class _Text(str):
    """A TEXT property value, escaped when written."""

    def to_ical(self) -> bytes:
        return escape_text(self).encode("utf-8")


class _Verbatim(str):
    """A property value that is written as is (dates, tokens, PRODID)."""

    def to_ical(self) -> bytes:
        return self.encode("utf-8")


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def format_datetime_utc(value: datetime) -> str:
    """Format as ``YYYYMMDDTHHMMSSZ``; naive datetimes are taken as UTC."""
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def format_date(value: datetime) -> str:
    return value.strftime("%Y%m%d")


def _content_line(name: str, value: str, params: dict[str, str] | None = None) -> str:
    """Render one folded content line, parameters in insertion order."""
    line = Contentline.from_parts(name, Parameters(params or {}), value, sorted=False)
    return line.to_ical().decode("utf-8")


def _attendee_line(attendee: Attendee) -> str:
    params: dict[str, str] = {}
    if attendee.display_name:
        params["CN"] = attendee.display_name
    if attendee.response_status:
        params["PARTSTAT"] = attendee.response_status.upper()
    params["RSVP"] = "TRUE"
    return _content_line("ATTENDEE", vCalAddress(f"mailto:{attendee.email}"), params)


def encode_vevent(
    event: CreateEventInput,
    uid: str | None = None,
    *,
    now: datetime | None = None,
) -> str:
    """Render *event* as a VCALENDAR containing one VEVENT.

    A fresh UID is generated when *uid* is not supplied. ``now`` overrides the
    DTSTAMP value. Display names are quoted only when they need it, and lines
    longer than 75 octets are folded.
    """
    event_uid = uid or str(uuid.uuid4())
    stamp = format_datetime_utc(now or datetime.now(UTC))

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        _content_line("PRODID", _Verbatim(PRODID)),
        "BEGIN:VEVENT",
        _content_line("UID", _Text(event_uid)),
        _content_line("DTSTAMP", _Verbatim(stamp)),
    ]

    if event.summary:
        lines.append(_content_line("SUMMARY", _Text(event.summary)))

    if event.is_all_day:
        date_param = {"VALUE": "DATE"}
        lines.append(_content_line("DTSTART", _Verbatim(format_date(event.start_time)), date_param))
        lines.append(_content_line("DTEND", _Verbatim(format_date(event.end_time)), date_param))
    else:
        lines.append(_content_line("DTSTART", _Verbatim(format_datetime_utc(event.start_time))))
        lines.append(_content_line("DTEND", _Verbatim(format_datetime_utc(event.end_time))))

    if event.description:
        lines.append(_content_line("DESCRIPTION", _Text(event.description)))

    if event.location:
        lines.append(_content_line("LOCATION", _Text(event.location)))

    if event.status is not None and event.status != EventStatus.confirmed:
        lines.append(_content_line("STATUS", _Verbatim(event.status.value.upper())))

    if event.organizer_email:
        lines.append(_content_line("ORGANIZER", vCalAddress(f"mailto:{event.organizer_email}")))

    for attendee in event.attendees:
        lines.append(_attendee_line(attendee))

    lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return LINE_SEPARATOR.join(lines)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def unfold_lines(text: str) -> list[str]:
    """Split *text* into logical lines, joining folded continuations.

    A physical line starting with a space or a tab continues the previous
    line; exactly one leading whitespace character is dropped. CRLF, LF and
    lone CR all end a line. Blank lines are dropped.
    """
    normalized = _LONE_CR_PATTERN.sub("\n", text)
    return [str(line) for line in Contentlines.from_ical(normalized) if line]


def _vevent_lines(lines: list[str]) -> Iterable[str]:
    """Yield the top-level property lines of the first VEVENT.

    Nested components (VALARM) are skipped. Without any VEVENT the whole input
    is treated as a property list.
    """
    start = next(
        (index for index, line in enumerate(lines) if line.strip().upper() == "BEGIN:VEVENT"),
        None,
    )
    if start is None:
        yield from lines
        return

    depth = 0
    for line in lines[start + 1 :]:
        marker = line.strip().upper()
        if marker.startswith("BEGIN:"):
            depth += 1
            continue
        if marker.startswith("END:"):
            if depth == 0:
                return
            depth -= 1
            continue
        if depth == 0:
            yield line


def _parse_params(raw: str) -> Parameters:
    """Parse ``;``-separated parameters, skipping the ones that are malformed."""
    params = Parameters()
    for piece in q_split(raw, ";"):
        if not piece:
            continue
        try:
            params.update(Parameters.from_ical(piece))
        except ValueError:
            logger.debug("Ignoring malformed iCalendar parameter %r", piece)
    return params


def _split_line(line: str) -> tuple[str, Parameters, str] | None:
    """Split a content line into name, parameters and raw value.

    Colons and semicolons inside quoted parameter values do not split.
    Returns ``None`` for lines without a name or a value separator.
    """
    head_and_value = q_split(line, ":", maxsplit=1)
    if len(head_and_value) != 2:
        return None
    head, value = head_and_value
    name, *rest = q_split(head, ";", maxsplit=1) or [""]
    name = name.strip().upper()
    if not name:
        return None
    return name, _parse_params(rest[0] if rest else ""), value


def _param(params: Parameters, key: str) -> str | None:
    value = params.get(key)
    if isinstance(value, list):
        value = ",".join(value)
    return value or None


def _is_date_only(params: Parameters) -> bool:
    return (_param(params, "VALUE") or "").upper() == "DATE"


def parse_ical_datetime(value: str, *, date_only: bool) -> int | None:
    """Parse a DTSTART/DTEND value into epoch seconds, or ``None`` if malformed.

    ``YYYYMMDD`` (date only) maps to local midnight. ``YYYYMMDDTHHMMSS`` is
    local time unless it carries a trailing ``Z``, in which case it is UTC.
    """
    raw = value.strip()
    try:
        if date_only:
            parsed = datetime(int(raw[0:4]), int(raw[4:6]), int(raw[6:8]))
            return int(parsed.timestamp())

        is_utc = raw.upper().endswith("Z")
        cleaned = raw.rstrip("Zz")
        seconds_raw = cleaned[13:15]
        seconds = int(seconds_raw) if seconds_raw.isdigit() else 0
        parsed = datetime(
            int(cleaned[0:4]),
            int(cleaned[4:6]),
            int(cleaned[6:8]),
            int(cleaned[9:11]),
            int(cleaned[11:13]),
            seconds,
            tzinfo=UTC if is_utc else None,
        )
        return int(parsed.timestamp())
    except (ValueError, OverflowError, OSError):
        logger.debug("Ignoring malformed iCalendar date value %r", value)
        return None


def _mailto(value: str) -> str | None:
    match = _MAILTO_PATTERN.search(value)
    return match.group(1).strip() if match else None


def _parse_attendee(params: Parameters, value: str) -> Attendee | None:
    email = _mailto(value)
    if not email:
        return None
    partstat = _param(params, "PARTSTAT")
    return Attendee(
        email=email,
        display_name=_param(params, "CN"),
        response_status=partstat.lower() if partstat else None,
    )


def decode_vevent(text: str, href: str | None = None) -> Event:
    """Decode an iCalendar resource into an ``Event``. Never raises.

    ``href`` is the resource locator; when given it becomes ``remote_id``,
    otherwise the UID is used, and failing that a generated id.

    Whether the event is all-day is decided by DTSTART alone, and DTEND is
    read in the same mode.
    """
    uid: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    dtstart: tuple[str, bool] | None = None
    dtend: str | None = None
    status = EventStatus.confirmed
    organizer_email: str | None = None
    attendees: list[Attendee] = []

    for line in _vevent_lines(unfold_lines(text)):
        parts = _split_line(line)
        if parts is None:
            continue
        name, params, value = parts

        if name == "UID":
            uid = unescape_text(value).strip() or None
        elif name == "SUMMARY":
            summary = unescape_text(value)
        elif name == "DESCRIPTION":
            description = unescape_text(value)
        elif name == "LOCATION":
            location = unescape_text(value)
        elif name == "DTSTART":
            dtstart = (value, _is_date_only(params))
        elif name == "DTEND":
            dtend = value
        elif name == "STATUS":
            status = EventStatus.parse(value)
        elif name == "ORGANIZER":
            organizer_email = _mailto(value) or organizer_email
        elif name == "ATTENDEE":
            attendee = _parse_attendee(params, value)
            if attendee is not None:
                attendees.append(attendee)

    is_all_day = bool(dtstart and dtstart[1])

    start_time = None
    if dtstart is not None:
        start_time = parse_ical_datetime(dtstart[0], date_only=is_all_day)
    if start_time is None:
        start_time = 0

    end_time = None
    if dtend is not None:
        end_time = parse_ical_datetime(dtend, date_only=is_all_day)
    if end_time is None:
        end_time = start_time + DEFAULT_EVENT_DURATION_SECONDS

    return Event(
        remote_id=href or uid or str(uuid.uuid4()),
        uid=uid,
        summary=summary,
        description=description,
        location=location,
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        status=status,
        organizer_email=organizer_email,
        attendees=attendees,
        raw_payload=text,
    )
