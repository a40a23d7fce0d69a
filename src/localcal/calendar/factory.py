"""Provider selection and per-account memoization.

``ProviderRegistry`` is the only place that inspects account configuration to
choose a backend; everything else works against ``CalendarProvider``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from localcal.calendar.caldav_provider import (
    CalDAVCredentials,
    CalDAVProvider,
    CalDAVSession,
    SessionFactory,
)
from localcal.calendar.errors import CalendarConfigError
from localcal.calendar.google_provider import (
    GoogleCalendarProvider,
    HttpxJsonRequester,
    JsonRequester,
    StaticAccessToken,
)
from localcal.calendar.provider import (
    SYNC_WINDOW_FUTURE_DAYS,
    SYNC_WINDOW_PAST_DAYS,
    CalendarProvider,
    ProviderType,
)
from localcal.config import AccountConfig

logger = logging.getLogger(__name__)

AccountLookup = Callable[[str], Awaitable[AccountConfig | None]]
RequesterFactory = Callable[[AccountConfig], JsonRequester]


def resolve_provider_type(account: AccountConfig) -> ProviderType | None:
    """Pick the backend for *account*, or ``None`` when it has no calendar support."""
    # Standalone CalDAV account.
    if account.provider == "caldav":
        return "caldav"
    # Mail account carrying CalDAV calendar settings.
    if account.calendar_provider == "caldav" and account.caldav_url:
        return "caldav"
    if account.provider == "gmail_api" or account.calendar_provider == "google_api":
        return "google_api"
    return None


def default_requester_factory(account: AccountConfig) -> JsonRequester:
    """Build an httpx requester from a pre-issued access token.

    Token refresh is owned by the embedding application; it should pass its own
    ``requester_factory`` when tokens expire.
    """
    if not account.access_token:
        raise CalendarConfigError(f"No Google access token configured for account {account.id}")
    return HttpxJsonRequester(StaticAccessToken(account.access_token))


class ProviderRegistry:
    """Resolves and memoizes one ``CalendarProvider`` per account."""

    def __init__(
        self,
        account_lookup: AccountLookup,
        *,
        requester_factory: RequesterFactory = default_requester_factory,
        caldav_session_factory: SessionFactory = CalDAVSession,
        timezone: str | None = None,
        sync_past_days: int = SYNC_WINDOW_PAST_DAYS,
        sync_future_days: int = SYNC_WINDOW_FUTURE_DAYS,
    ) -> None:
        self._account_lookup = account_lookup
        self._requester_factory = requester_factory
        self._caldav_session_factory = caldav_session_factory
        self._timezone = timezone
        self._sync_past_days = sync_past_days
        self._sync_future_days = sync_future_days
        self._providers: dict[str, CalendarProvider] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> CalendarProvider:
        """Return the memoized provider for *account_id*, creating it if needed.

        Raises:
            CalendarConfigError: the account does not exist or has no calendar
                backend configured.
        """
        cached = self._providers.get(account_id)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._providers.get(account_id)
            if cached is not None:
                return cached

            account = await self._account_lookup(account_id)
            if account is None:
                raise CalendarConfigError(f"Account {account_id} not found")

            provider = self._build(account)
            self._providers[account_id] = provider
            logger.debug("Resolved %s provider for account %r", provider.type, account_id)
            return provider

    def _build(self, account: AccountConfig) -> CalendarProvider:
        provider_type = resolve_provider_type(account)
        if provider_type == "caldav":
            return CalDAVProvider(
                account.id,
                CalDAVCredentials(
                    server_url=account.caldav_url,
                    username=account.caldav_username or account.email,
                    password=account.caldav_password,
                ),
                session_factory=self._caldav_session_factory,
                sync_past_days=self._sync_past_days,
                sync_future_days=self._sync_future_days,
            )
        if provider_type == "google_api":
            return GoogleCalendarProvider(
                account.id,
                self._requester_factory(account),
                timezone=account.timezone or self._timezone,
                sync_past_days=self._sync_past_days,
                sync_future_days=self._sync_future_days,
            )
        raise CalendarConfigError(f"No calendar provider configured for account {account.id}")

    async def has_calendar_support(self, account_id: str) -> bool:
        account = await self._account_lookup(account_id)
        return account is not None and resolve_provider_type(account) is not None

    def invalidate(self, account_id: str) -> CalendarProvider | None:
        """Forget the provider of one account (e.g. after a credential change)."""
        return self._providers.pop(account_id, None)

    def invalidate_all(self) -> None:
        self._providers.clear()

    async def shutdown(self) -> None:
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await provider.shutdown()
