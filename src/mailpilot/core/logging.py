"""Structured logging for mailpilot.

structlog renders JSON (or console) lines on stdout. Two context variables
ride along on every event without being passed explicitly:

- run_id: one UUID per batch run (queue drain, backfill), also written to
  llm_request_log so AI attempts can be joined back to their run
- user_id: the mailbox owner for per-user operations (scoring, feedback,
  digests, preferences)

An explicit user_id/run_id keyword on a log call wins over the context.

Usage:
    from mailpilot.core.logging import get_logger, run_scope, user_scope

    logger = get_logger(__name__)

    with run_scope() as run_id:
        with user_scope("u1"):
            logger.info("email_processed", email_id="abc123", tier="high")
"""

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)
_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)

# Client libraries that log every request or statement at DEBUG/INFO
NOISY_LOGGERS = ("anthropic", "httpx", "httpcore", "aiosqlite")


def get_correlation_id() -> str | None:
    """Run ID of the current context, if any."""
    return _run_id.get()


@contextmanager
def run_scope(run_id: str | None = None) -> Iterator[str]:
    """Tag everything logged inside the block with one run ID.

    Yields:
        The run ID (a fresh UUID unless one is given)
    """
    run_id = run_id or str(uuid.uuid4())
    token = _run_id.set(run_id)
    try:
        yield run_id
    finally:
        _run_id.reset(token)


@contextmanager
def user_scope(user_id: str) -> Iterator[None]:
    """Tag everything logged inside the block with the mailbox owner."""
    token = _user_id.set(user_id)
    try:
        yield
    finally:
        _user_id.reset(token)


def add_run_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor adding run_id and user_id from the context."""
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("run_id", run_id)
    user_id = _user_id.get()
    if user_id is not None:
        event_dict.setdefault("user_id", user_id)
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines if True, colored console output otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_run_context,
    ]

    if json_output:
        renderer: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
