"""Structured logging for the ContaFlix worker.

Worker output is structlog over the stdlib ``logging`` module, written to
stderr so that command results on stdout stay machine readable.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, Literal

import structlog

from contaflix.config.settings import get_settings

# Libraries that log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "openai", "websockets")

REDACTED = "***"
SECRET_KEYS = frozenset({"apikey", "authorization", "service_key", "api_key", "password"})


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask credentials passed as log context, including nested header dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in SECRET_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SECRET_KEYS else v for k, v in value.items()
            }
    return event_dict


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level. Defaults to ``LOG_LEVEL``.
        format: ``json`` for log shipping, ``console`` for a terminal.
            Defaults to ``LOG_FORMAT``.
    """
    settings = get_settings()
    log_level = level or settings.log_level
    log_format = format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level),
    )
    if log_level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_command_context(command: str, **context: Any) -> None:
    """Attach the running command to every log line until cleared."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(command=command, **context)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
