"""Structured logging for MailPilot.

structlog renders JSON for the scheduled service and colored console output
for the CLI. Every log line written inside `run_context()` carries the run's
`run_id`, so one analysis pass or one staging sweep can be traced end to end.

Usage:
    from mailpilot.core.logging import get_logger, run_context

    logger = get_logger(__name__)

    with run_context() as run_id:
        logger.info("sweep_started")
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


@contextmanager
def run_context(run_id: str | None = None) -> Iterator[str]:
    """Tag log lines in this block with a run id.

    Inside an enclosing run the block joins it and yields the outer id.
    Otherwise a new id is set for the block and cleared on exit.
    """
    current = _run_id.get()
    if current is not None:
        yield current
        return

    token = _run_id.set(run_id or str(uuid.uuid4()))
    try:
        yield _run_id.get()
    finally:
        _run_id.reset(token)


def get_correlation_id() -> str | None:
    """Return the active run id, if any."""
    return _run_id.get()


def add_run_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    run_id = _run_id.get()
    if run_id is not None:
        event_dict.setdefault("run_id", run_id)
    return event_dict


def short_id(value: str | None, length: int = 20) -> str:
    """Shorten a Graph id (they run past 150 chars) for log output."""
    if not value:
        return ""
    return value if len(value) <= length else value[:length] + "..."


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog through stdlib logging on stdout.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines when True, console renderer when False
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_run_id,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
