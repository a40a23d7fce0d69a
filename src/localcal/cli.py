"""CLI for localcal: inspect and sync calendar accounts."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import click

from localcal.calendar.errors import CalendarError
from localcal.calendar.factory import ProviderRegistry
from localcal.calendar.ical import decode_vevent
from localcal.calendar.models import Event
from localcal.calendar.provider import CalendarProvider
from localcal.calendar.reconcile import CalendarReconciler
from localcal.config import ConfigError, LocalcalConfig, load_config
from localcal.core.logging import account_context, configure_logging
from localcal.testing import MemoryCalendarCache

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path("localcal.toml")


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to localcal.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """localcal: local-first calendar sync for Google Calendar and CalDAV."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


def _load(ctx: click.Context) -> LocalcalConfig:
    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    return config


def _build_registry(config: LocalcalConfig) -> ProviderRegistry:
    return ProviderRegistry(
        config.lookup_account,
        timezone=config.timezone,
        sync_past_days=config.sync.past_days,
        sync_future_days=config.sync.future_days,
    )


def _with_provider(
    config: LocalcalConfig,
    account_id: str,
    action: Callable[[CalendarProvider], Awaitable[T]],
) -> T:
    """Resolve the account's provider, run *action*, and always shut down."""

    async def _run() -> T:
        registry = _build_registry(config)
        with account_context(account_id):
            try:
                provider = await registry.get(account_id)
                return await action(provider)
            finally:
                await registry.shutdown()

    try:
        return asyncio.run(_run())
    except CalendarError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


def _event_json(event: Event) -> dict[str, Any]:
    return event.model_dump(mode="json", exclude={"raw_payload"})


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False))


@cli.command("test-connection")
@click.argument("account_id")
@click.pass_context
def test_connection(ctx: click.Context, account_id: str) -> None:
    """Check credentials and reachability of an account's calendar backend."""
    config = _load(ctx)
    result = _with_provider(config, account_id, lambda provider: provider.test_connection())
    _echo_json(result.model_dump(mode="json"))
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("account_id")
@click.pass_context
def calendars(ctx: click.Context, account_id: str) -> None:
    """List the calendars visible to an account."""
    config = _load(ctx)
    found = _with_provider(config, account_id, lambda provider: provider.list_calendars())
    _echo_json([calendar.model_dump(mode="json") for calendar in found])


@cli.command()
@click.argument("account_id")
@click.argument("calendar_id")
@click.option("--days-back", type=int, default=7, show_default=True)
@click.option("--days-ahead", type=int, default=30, show_default=True)
@click.pass_context
def events(
    ctx: click.Context,
    account_id: str,
    calendar_id: str,
    days_back: int,
    days_ahead: int,
) -> None:
    """Fetch events of CALENDAR_ID (remote id) around today."""
    config = _load(ctx)
    now = datetime.now(UTC)
    found = _with_provider(
        config,
        account_id,
        lambda provider: provider.fetch_events(
            calendar_id,
            now - timedelta(days=days_back),
            now + timedelta(days=days_ahead),
        ),
    )
    _echo_json([_event_json(event) for event in found])


@cli.command()
@click.argument("account_id")
@click.argument("calendar_id")
@click.option("--sync-token", default=None, help="Resume from a previous sync token")
@click.pass_context
def sync(ctx: click.Context, account_id: str, calendar_id: str, sync_token: str | None) -> None:
    """Run one raw sync_events call and print the resulting change set."""
    config = _load(ctx)
    result = _with_provider(
        config,
        account_id,
        lambda provider: provider.sync_events(calendar_id, sync_token),
    )
    _echo_json(
        {
            "created": [_event_json(event) for event in result.created],
            "updated": [_event_json(event) for event in result.updated],
            "deleted_remote_ids": result.deleted_remote_ids,
            "new_sync_token": result.new_sync_token,
            "new_ctag": result.new_ctag,
            "needs_full_resync": result.needs_full_resync,
        }
    )


@cli.command()
@click.argument("account_id")
@click.pass_context
def reconcile(ctx: click.Context, account_id: str) -> None:
    """Sync every calendar of an account into an in-memory cache and report."""
    config = _load(ctx)
    cache = MemoryCalendarCache()

    async def _sync_all(provider: CalendarProvider) -> dict[str, Any]:
        reconciler = CalendarReconciler(
            provider, cache, prune_missing=config.sync.prune_missing
        )
        reports = await reconciler.sync_account()
        return {calendar_id: asdict(report) for calendar_id, report in reports.items()}

    _echo_json(_with_provider(config, account_id, _sync_all))


@cli.command("ics-decode")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--href", default=None, help="Resource URL to use as remote_id")
def ics_decode(path: Path, href: str | None) -> None:
    """Decode an .ics file and print the canonical event."""
    event = decode_vevent(path.read_text(encoding="utf-8"), href)
    _echo_json(_event_json(event))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
