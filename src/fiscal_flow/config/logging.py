"""Logging setup shared by the API process and the monitor CLI.

Both structlog events and plain ``logging`` records (httpx, uvicorn) go
through one ``ProcessorFormatter``, so a deployment sees a single stream in
a single format. Provider tokens and store keys never reach the output.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any, Literal

import structlog

from fiscal_flow.config.settings import get_settings

SERVICE_NAME = "fiscal-flow"
REDACTED = "***"

# Substrings of event keys whose values are secrets
_SECRET_MARKERS = ("token", "api_key", "apikey", "authorization", "password", "secret")

# Chatty libraries kept at WARNING unless the service itself runs at DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore")


def add_service(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask values of keys that look like credentials."""
    for key in list(event_dict):
        if any(marker in key.lower() for marker in _SECRET_MARKERS) and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
) -> None:
    """Route structlog and stdlib logging to stdout.

    Args:
        level: Root log level. Defaults to ``LOG_LEVEL``.
        format: ``json`` for log shippers, ``console`` for terminals.
            Defaults to ``LOG_FORMAT``.
    """
    settings = get_settings()
    log_level = getattr(logging, level or settings.log_level)
    log_format = format or settings.log_format

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service,
        redact_secrets,
    ]

    if log_format == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.dict_tracebacks)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    quiet_level = log_level if log_level == logging.DEBUG else max(log_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
