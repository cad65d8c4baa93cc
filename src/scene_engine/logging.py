"""Structured logging configuration.

Background work binds the job it is running for with ``job_log_context``;
every event logged inside (pipeline, scene processor, gateway, registry)
then carries ``job_id`` and whatever else was bound, such as ``task`` or
``scene_id``.
"""

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import Any
from uuid import UUID

import structlog

from scene_engine.config import settings

# Event keys whose values must never reach the log output
SECRET_KEYS = frozenset({"api_key", "personal_key", "encrypted_key", "master_key"})

_configured = False


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Replace credential values with a short masked form."""
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if value:
            event_dict[key] = f"***{str(value)[-4:]}" if len(str(value)) > 8 else "***"
    return event_dict


def setup_logging() -> None:
    """Configure structured logging for the API, the worker and the CLI.

    Safe to call more than once; only the first call installs the handler.
    """
    global _configured
    if _configured:
        return

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level.upper())

    # Quiet per-request and polling noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


@contextmanager
def job_log_context(job_id: UUID | str, **fields: Any) -> Iterator[None]:
    """Bind ``job_id`` (and ``fields``) to every log event in this context.

    Context variables do not follow work into pool threads, so scene
    workers bind their own context.
    """
    bound = {key: str(value) for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(job_id=str(job_id), **bound):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance for a module."""
    return structlog.get_logger(name)
