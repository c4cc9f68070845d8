"""
Structured logging for the audit core.

Every log line carries the deployment environment, and lines emitted while an
audit store is in use carry ``store`` (and ``tenant_id`` under tenancy), so
tamper alerts and deletions can be traced to the database they touched.
Console output in development, JSON elsewhere; logs go to stderr because the
commands print their reports on stdout.
"""

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from audit_core.core.config import Settings, get_settings


def environment_tagger(environment: str) -> Processor:
    """Processor adding ``environment`` unless the caller set one."""

    def tag(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("environment", environment)
        return event_dict

    return tag


def store_context(store: str, *, tenant_id: str | None = None) -> AbstractContextManager[Any]:
    """Bind the audit store (and tenant) to log lines emitted inside the block."""
    values: dict[str, Any] = {"store": store}
    if tenant_id is not None:
        values["tenant_id"] = tenant_id
    return structlog.contextvars.bound_contextvars(**values)


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger from *settings*."""
    settings = settings or get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        environment_tagger(settings.environment),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
