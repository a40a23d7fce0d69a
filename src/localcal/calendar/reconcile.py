"""Reconciliation of provider results into the local cache.

The cache itself is an external collaborator described by ``CalendarCache``.
``CalendarReconciler`` owns the ordering rules that keep it consistent:

- every event in ``created``/``updated`` is a full replacement keyed by
  ``(calendar_id, remote_id)``; there is no field merge at this layer;
- ``deleted_remote_ids`` are unconditional removals;
- sync markers are persisted only after the change set has been applied, so a
  failure in between replays idempotent work instead of losing changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from localcal.calendar.models import (
    Calendar,
    CreateEventInput,
    Event,
    SyncResult,
    UpdateEventInput,
)
from localcal.calendar.provider import CalendarProvider, ProviderType

logger = logging.getLogger(__name__)


class CalendarCache(Protocol):
    """Local store contract. Every method must be idempotent."""

    async def upsert_calendar(
        self,
        account_id: str,
        provider: ProviderType,
        calendar: Calendar,
    ) -> str:
        """Insert or replace a calendar; return its local ``calendar_id``."""
        ...

    async def upsert_event(self, calendar_id: str, event: Event) -> None: ...

    async def delete_event_by_remote_id(self, calendar_id: str, remote_id: str) -> None: ...

    async def get_sync_token(self, calendar_id: str) -> str | None: ...

    async def update_sync_token(
        self,
        calendar_id: str,
        sync_token: str | None,
        ctag: str | None = None,
    ) -> None: ...

    async def list_remote_ids_in_range(
        self,
        calendar_id: str,
        start_time: int,
        end_time: int,
    ) -> list[str]:
        """Remote ids of cached events overlapping ``[start_time, end_time)``."""
        ...


@dataclass
class ReconcileReport:
    """What one ``apply`` (or ``sync_calendar``) did to the cache."""

    upserted: int = 0
    deleted: int = 0
    pruned: int = 0
    full_resync: bool = False
    sync_token: str | None = None


class CalendarReconciler:
    """Applies one account's provider results to a ``CalendarCache``."""

    def __init__(
        self,
        provider: CalendarProvider,
        cache: CalendarCache,
        *,
        prune_missing: bool = True,
    ) -> None:
        self._provider = provider
        self._cache = cache
        self._prune_missing = prune_missing

    @property
    def account_id(self) -> str:
        return self._provider.account_id

    async def sync_calendars(self) -> list[tuple[str, Calendar]]:
        """Upsert every remote calendar; return ``(calendar_id, calendar)`` pairs."""
        calendars = await self._provider.list_calendars()
        stored: list[tuple[str, Calendar]] = []
        for calendar in calendars:
            calendar_id = await self._cache.upsert_calendar(
                self.account_id, self._provider.type, calendar
            )
            stored.append((calendar_id, calendar))
        return stored

    async def apply(self, calendar_id: str, result: SyncResult) -> ReconcileReport:
        """Apply a ``SyncResult`` without touching the stored sync markers."""
        report = ReconcileReport()

        returned: set[str] = set()
        for event in [*result.created, *result.updated]:
            await self._cache.upsert_event(calendar_id, event)
            returned.add(event.remote_id)
            report.upserted += 1

        for remote_id in result.deleted_remote_ids:
            await self._cache.delete_event_by_remote_id(calendar_id, remote_id)
            report.deleted += 1

        # Tombstone pass: a full refetch is authoritative for its window.
        if self._prune_missing and result.window is not None:
            deleted = set(result.deleted_remote_ids)
            cached_ids = await self._cache.list_remote_ids_in_range(
                calendar_id,
                result.window.start_time,
                result.window.end_time,
            )
            for remote_id in cached_ids:
                if remote_id in returned or remote_id in deleted:
                    continue
                await self._cache.delete_event_by_remote_id(calendar_id, remote_id)
                report.pruned += 1

        return report

    async def sync_calendar(self, calendar_id: str, remote_calendar_id: str) -> ReconcileReport:
        """Run one sync cycle for a calendar.

        An expired token triggers exactly one token-less retry. The new sync
        token (or, after a fallback, its absence) is persisted last.
        """
        sync_token = await self._cache.get_sync_token(calendar_id)
        result = await self._provider.sync_events(remote_calendar_id, sync_token)

        full_resync = False
        if sync_token and result.needs_full_resync:
            logger.info(
                "Sync token rejected for calendar %r (account %r); running full resync",
                calendar_id,
                self.account_id,
            )
            full_resync = True
            result = await self._provider.sync_events(remote_calendar_id, None)

        report = await self.apply(calendar_id, result)
        report.full_resync = full_resync
        report.sync_token = result.new_sync_token

        if full_resync or result.new_sync_token is not None or result.new_ctag is not None:
            await self._cache.update_sync_token(
                calendar_id, result.new_sync_token, result.new_ctag
            )

        logger.info(
            "Reconciled calendar %r: %d upserted, %d deleted, %d pruned",
            calendar_id,
            report.upserted,
            report.deleted,
            report.pruned,
        )
        return report

    async def sync_account(self) -> dict[str, ReconcileReport]:
        """Refresh the calendar list, then sync every calendar of the account."""
        reports: dict[str, ReconcileReport] = {}
        for calendar_id, calendar in await self.sync_calendars():
            reports[calendar_id] = await self.sync_calendar(calendar_id, calendar.remote_id)
        return reports

    # ------------------------------------------------------------------
    # Local mutations: provider first, then the authoritative response.
    # ------------------------------------------------------------------

    async def create_event(
        self,
        calendar_id: str,
        remote_calendar_id: str,
        event: CreateEventInput,
    ) -> Event:
        created = await self._provider.create_event(remote_calendar_id, event)
        await self._cache.upsert_event(calendar_id, created)
        return created

    async def update_event(
        self,
        calendar_id: str,
        remote_calendar_id: str,
        remote_id: str,
        patch: UpdateEventInput,
        etag: str | None = None,
    ) -> Event:
        updated = await self._provider.update_event(remote_calendar_id, remote_id, patch, etag)
        await self._cache.upsert_event(calendar_id, updated)
        return updated

    async def delete_event(
        self,
        calendar_id: str,
        remote_calendar_id: str,
        remote_id: str,
        etag: str | None = None,
    ) -> None:
        await self._provider.delete_event(remote_calendar_id, remote_id, etag)
        await self._cache.delete_event_by_remote_id(calendar_id, remote_id)
