"""localcal configuration loading and validation.

Reads ``localcal.toml``, resolves ``${VAR}`` references and returns a
validated ``LocalcalConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_FILENAME = "localcal.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_KNOWN_PROVIDERS = ("gmail_api", "caldav", "imap")
_KNOWN_CALENDAR_PROVIDERS = ("google_api", "caldav")


class ConfigError(Exception):
    """Raised when localcal configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [localcal.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Sync window and reconciliation settings from [localcal.sync]."""

    past_days: int = 90
    future_days: int = 365
    prune_missing: bool = True


@dataclass
class AccountConfig:
    """A single ``[[accounts]]`` entry.

    ``provider`` is the account's primary transport (``gmail_api``, ``caldav``
    or ``imap``); ``calendar_provider`` optionally attaches a calendar backend
    to a mail account.
    """

    id: str
    provider: str
    email: str | None = None
    calendar_provider: str | None = None
    caldav_url: str | None = None
    caldav_username: str | None = None
    caldav_password: str | None = None
    access_token: str | None = None
    timezone: str | None = None


@dataclass
class LocalcalConfig:
    """Parsed and validated localcal configuration."""

    timezone: str | None = None  # None: the host's local zone
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    accounts: dict[str, AccountConfig] = field(default_factory=dict)

    async def lookup_account(self, account_id: str) -> AccountConfig | None:
        """Async account lookup, in the shape ``ProviderRegistry`` expects."""
        return self.accounts.get(account_id)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _optional_str(entry: dict[str, Any], key: str, path: str) -> str | None:
    value = entry.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    value = value.strip()
    return value or None


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _timezone_name(value: Any, path: str) -> str | None:
    """Validate an IANA zone name; ``None`` means the host's local zone."""
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{path} must be a non-empty string")
    name = value.strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown time zone in {path}: {name!r}") from exc
    return name


def _parse_account_entry(entry: Any, index: int) -> AccountConfig:
    """Parse and validate one ``[[accounts]]`` entry."""
    entry_path = f"accounts[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    account_id = entry.get("id")
    if not isinstance(account_id, str) or not account_id.strip():
        raise ConfigError(f"{entry_path}.id must be a non-empty string")

    provider = entry.get("provider")
    if provider not in _KNOWN_PROVIDERS:
        raise ConfigError(
            f"Invalid {entry_path}.provider: {provider!r}. "
            f"Expected one of: {', '.join(_KNOWN_PROVIDERS)}."
        )

    calendar_provider = _optional_str(entry, "calendar_provider", entry_path)
    if calendar_provider is not None and calendar_provider not in _KNOWN_CALENDAR_PROVIDERS:
        raise ConfigError(
            f"Invalid {entry_path}.calendar_provider: {calendar_provider!r}. "
            f"Expected one of: {', '.join(_KNOWN_CALENDAR_PROVIDERS)}."
        )

    return AccountConfig(
        id=account_id.strip(),
        provider=provider,
        email=_optional_str(entry, "email", entry_path),
        calendar_provider=calendar_provider,
        caldav_url=_optional_str(entry, "caldav_url", entry_path),
        caldav_username=_optional_str(entry, "caldav_username", entry_path),
        caldav_password=_optional_str(entry, "caldav_password", entry_path),
        access_token=_optional_str(entry, "access_token", entry_path),
        timezone=_timezone_name(
            _optional_str(entry, "timezone", entry_path), f"{entry_path}.timezone"
        ),
    )


def parse_config(data: dict[str, Any]) -> LocalcalConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    # --- [localcal] section (optional) ---
    section = data.get("localcal", {})
    if not isinstance(section, dict):
        raise ConfigError("[localcal] must be a TOML table")

    timezone = _timezone_name(section.get("timezone"), "localcal.timezone")

    # --- [localcal.logging] sub-section ---
    logging_section = section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid localcal.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [localcal.sync] sub-section ---
    sync_section = section.get("sync", {})
    prune_missing = sync_section.get("prune_missing", True)
    if not isinstance(prune_missing, bool):
        raise ConfigError("localcal.sync.prune_missing must be a boolean")
    sync_config = SyncConfig(
        past_days=_positive_int(sync_section, "past_days", 90, "localcal.sync"),
        future_days=_positive_int(sync_section, "future_days", 365, "localcal.sync"),
        prune_missing=prune_missing,
    )

    # --- [[accounts]] ---
    raw_accounts = data.get("accounts", [])
    if not isinstance(raw_accounts, list):
        raise ConfigError("accounts must be an array of tables ([[accounts]])")

    accounts: dict[str, AccountConfig] = {}
    for index, entry in enumerate(raw_accounts):
        account = _parse_account_entry(entry, index)
        if account.id in accounts:
            raise ConfigError(f"Duplicate account id: {account.id!r}")
        accounts[account.id] = account

    return LocalcalConfig(
        timezone=timezone,
        logging=logging_config,
        sync=sync_config,
        accounts=accounts,
    )


def load_config(path: Path) -> LocalcalConfig:
    """Load and validate a localcal config file.

    Parameters
    ----------
    path:
        Path to a TOML file, or a directory containing ``localcal.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
