"""Logging setup for shop clients.

Records emitted by the client and dispatcher carry shop context as
``extra`` attributes: the request (``method``, ``path``, ``status_code``,
``duration_ms``), the dispatcher state (``tokens_left``, ``queued``,
``in_flight``) and the latest ``call_limit`` reading. Both formatters
render that context; the filter keeps credentials out of it.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from shopify_dispatch.config.settings import get_settings
from shopify_dispatch.utils.validation import sanitize_log_message

REQUEST_FIELDS = ("method", "path", "status_code", "duration_ms")
DISPATCH_FIELDS = ("tokens_left", "queued", "in_flight")

# Loggers that are chatty at DEBUG and add nothing shop-specific
_NOISY_LOGGERS = ("httpx", "httpcore")


def _extract(record: logging.LogRecord, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: getattr(record, name) for name in fields if hasattr(record, name)}


def _format_call_limit(call_limit: Any) -> str | None:
    """Render a call-limit dict as ``used/max``."""
    if not isinstance(call_limit, dict):
        return None
    current, maximum = call_limit.get("current"), call_limit.get("max")
    if current is None or maximum is None:
        return None
    return f"{current}/{maximum}"


class SanitizingFilter(logging.Filter):
    """Redact access tokens, app passwords and URL credentials.

    Covers the message, its string arguments and the ``path`` extra, since
    request paths can carry credentials in their query string.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_message(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                key: sanitize_log_message(value) if isinstance(value, str) else value
                for key, value in record.args.items()
            }
        path = getattr(record, "path", None)
        if isinstance(path, str):
            record.path = sanitize_log_message(path)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with request and dispatch context grouped."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "shop"):
            entry["shop"] = record.shop

        request = _extract(record, REQUEST_FIELDS)
        if request:
            entry["request"] = request

        dispatch = _extract(record, DISPATCH_FIELDS)
        if dispatch:
            entry["dispatch"] = dispatch

        call_limit = getattr(record, "call_limit", None)
        if call_limit is not None:
            entry["call_limit"] = call_limit

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with a trailing ``[key=value ...]`` context block.

    Example:
        2026-01-01 12:00:00 - shopify_dispatch.client - DEBUG - GET /admin/shop.json -> 200
        [shop=my-shop status_code=200 call_limit=12/40]
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = self._context(record)
        if not context:
            return line

        block = " ".join(f"{key}={value}" for key, value in context)
        # Keep the traceback, if any, after the context
        head, sep, tail = line.partition("\n")
        return f"{head} [{block}]{sep}{tail}"

    @staticmethod
    def _context(record: logging.LogRecord) -> list[tuple[str, Any]]:
        context: list[tuple[str, Any]] = []
        if hasattr(record, "shop"):
            context.append(("shop", record.shop))
        if hasattr(record, "status_code"):
            context.append(("status_code", record.status_code))
        if hasattr(record, "duration_ms"):
            context.append(("duration_ms", record.duration_ms))
        context.extend(_extract(record, DISPATCH_FIELDS).items())
        call_limit = _format_call_limit(getattr(record, "call_limit", None))
        if call_limit:
            context.append(("call_limit", call_limit))
        return context


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        sanitize_logs: If True, redact shop credentials from logs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter() if format.lower() == "json" else TextFormatter())
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging_from_settings(settings: Any = None) -> None:
    """Configure logging from ``log_level``, ``log_format`` and ``sanitize_logs``.

    Args:
        settings: Settings instance (defaults to ``get_settings()``)
    """
    if settings is None:
        settings = get_settings()

    configure_logging(
        level=settings.log_level,
        format=settings.log_format,
        sanitize_logs=settings.sanitize_logs,
    )
