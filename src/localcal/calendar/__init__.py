"""Calendar providers, the iCalendar codec and cache reconciliation."""

from localcal.calendar.errors import (
    CalendarConfigError,
    CalendarConflictError,
    CalendarError,
    CalendarNotFoundError,
    CalendarRequestError,
)
from localcal.calendar.factory import ProviderRegistry
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
from localcal.calendar.provider import CalendarProvider
from localcal.calendar.reconcile import CalendarCache, CalendarReconciler, ReconcileReport

__all__ = [
    "Attendee",
    "Calendar",
    "CalendarCache",
    "CalendarConfigError",
    "CalendarConflictError",
    "CalendarError",
    "CalendarNotFoundError",
    "CalendarProvider",
    "CalendarReconciler",
    "CalendarRequestError",
    "ConnectionTestResult",
    "CreateEventInput",
    "Event",
    "EventStatus",
    "ProviderRegistry",
    "ReconcileReport",
    "SyncResult",
    "SyncWindow",
    "UpdateEventInput",
]
