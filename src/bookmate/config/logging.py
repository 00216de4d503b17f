"""Structured logging for BookMate.

Log lines go to stderr so that command output on stdout stays machine
readable. Every event carries the active account once the CLI has resolved
it, and values under credential-like keys are masked before rendering.
"""

import logging
import sys
from typing import Any, Literal

import structlog

from bookmate.config.settings import get_settings

REDACTED = "***"
SENSITIVE_KEYS = frozenset({"secret", "api_key", "private_key", "password", "token"})


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential values, including nested payload dicts."""
    return {key: _redact(key, value) for key, value in event_dict.items()}


def _redact(key: str, value: Any) -> Any:
    if key.lower() in SENSITIVE_KEYS and value:
        return REDACTED
    if isinstance(value, dict):
        return {k: _redact(str(k), v) for k, v in value.items()}
    return value


def bind_account_context(account_id: str, spreadsheet_id: str = "") -> None:
    """Attach the account to every later log event in this context."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(account_id=account_id)
    if spreadsheet_id:
        structlog.contextvars.bind_contextvars(spreadsheet_id=spreadsheet_id)


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level. Defaults to ``LOG_LEVEL``.
        format: ``json`` or ``console``. Defaults to ``LOG_FORMAT``.
    """
    settings = get_settings()
    log_level = level or settings.log_level
    log_format = format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
    )

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
