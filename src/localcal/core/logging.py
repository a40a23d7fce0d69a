"""Structured logging for localcal.

Plain ``logging.getLogger(__name__)`` call sites are rendered through
structlog's ``ProcessorFormatter``:

- ``text``: colored, human-readable console output (default)
- ``json``: one JSON object per line

The account being synced and the current OTel trace/span ids are added to
every record. With ``log_root`` set, JSON copies are also written to::

    {log_root}/localcal.log    # application records
    {log_root}/transport.log   # httpx / httpcore / caldav records
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

# ---------------------------------------------------------------------------
# Account context (asyncio-safe via ContextVar)
# ---------------------------------------------------------------------------

_account_context: ContextVar[str | None] = ContextVar("account_id", default=None)


def set_account_context(account_id: str | None) -> None:
    """Set the account id for the current async context."""
    _account_context.set(account_id)


def get_account_context() -> str | None:
    return _account_context.get()


@contextmanager
def account_context(account_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with *account_id*."""
    token = _account_context.set(account_id)
    try:
        yield
    finally:
        _account_context.reset(token)


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_account_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``account`` from the ContextVar into the event dict."""
    event_dict["account"] = _account_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

TRANSPORT_LOGGERS = (
    "httpx",
    "httpcore",
    "caldav",
)

_APP_LOG_FILENAME = "localcal.log"
_TRANSPORT_LOG_FILENAME = "transport.log"


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_account_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _json_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console output, ``"json"`` for JSON lines.
    log_root:
        Optional directory receiving JSON log files.
    """
    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Reconfiguration must not duplicate output.
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in TRANSPORT_LOGGERS:
        transport_logger = logging.getLogger(name)
        transport_logger.handlers.clear()
        transport_logger.setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_processors = _build_processors(time_fmt="iso")

        root.addHandler(_json_file_handler(log_root / _APP_LOG_FILENAME, file_processors))

        transport_handler = _json_file_handler(
            log_root / _TRANSPORT_LOG_FILENAME, file_processors
        )
        for name in TRANSPORT_LOGGERS:
            logging.getLogger(name).addHandler(transport_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
