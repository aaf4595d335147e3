"""
Logging for the job engine.

Engine modules log through the standard library with ``extra={...}`` and the
executor and HTTP layer log through structlog. Both go through one
structlog ``ProcessorFormatter``, so every line is rendered the same way and
carries the job or request context bound in the current task.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from .settings import Settings, settings as default_settings

HANDLER_NAME = "dutyjobs"


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def setup_logging(settings: Settings | None = None) -> None:
    """Route structlog and stdlib logging through a single renderer."""
    settings = settings or default_settings
    level = getattr(logging, settings.log_level)

    if settings.debug:
        renderers: list[Any] = [structlog.dev.ConsoleRenderer()]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    formatter = structlog.stdlib.ProcessorFormatter(
        # records from logging.getLogger(...) loggers, with their extra= fields
        foreign_pre_chain=[*_shared_processors(), structlog.stdlib.ExtraAdder()],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


@contextmanager
def bind_job_context(
    job_id: str, job_type: str | None = None, workspace_id: str | None = None
) -> Iterator[None]:
    """
    Tag every log line emitted inside the block with the job it concerns.

    Each job runs in its own asyncio task with its own copy of the context,
    so concurrent jobs never see each other's identifiers.
    """
    context = {"job_id": job_id, "job_type": job_type, "workspace_id": workspace_id}
    with structlog.contextvars.bound_contextvars(
        **{key: value for key, value in context.items() if value is not None}
    ):
        yield
