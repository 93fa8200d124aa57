"""structlog setup for the EduConnect API.

Events are snake_case names with key-value fields, e.g.
``log.info("timetable_import_completed", total_schedules=12)``. Every event
carries ``service``; events emitted inside :func:`import_context` also carry
the term and the administrator running the import.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog

SERVICE_NAME = "educonnect"
# stdlib loggers that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "multipart", "uvicorn.access")


def add_service(logger, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(json_output: bool = False, log_level: str = "INFO", log_sql: bool = False) -> None:
    """Configure structlog and route stdlib loggers to stdout.

    JSON lines in production, coloured console output otherwise. SQL statements
    are only logged when ``log_sql`` is set.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        add_service,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.dev.set_exc_info,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer(ensure_ascii=False)]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(sys.stdout),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", stream=sys.stdout, level=level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    if log_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def import_context(term_id: str, user_id: Optional[str] = None, **extra) -> Iterator[None]:
    """Bind the import's term and user to every event logged inside the block."""
    fields = {"term_id": term_id, **extra}
    if user_id:
        fields["user_id"] = user_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield
