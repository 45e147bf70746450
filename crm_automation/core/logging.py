"""Structured logging for the automation engine.

Every record passes through structlog. Execution ids bound with
``execution_log_context`` are merged into each line logged while the
execution runs, including lines from handlers and collaborators.
"""

import sys
import structlog
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional
from crm_automation.core.config import Settings

NOISY_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "apscheduler", "httpx")


def _stdlib_handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def _renderer_chain(settings: Settings) -> list:
    if settings.log_format == "json":
        return [
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    return [
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ),
    ]


def configure_logging(settings: Settings) -> None:
    """Route stdlib logging to stdout (and log_file) and configure structlog on top."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        handlers=_stdlib_handlers(settings, level),
        format="%(message)s",
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        *_renderer_chain(settings),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def execution_log_context(execution_id: str, workflow_id: Optional[str] = None,
                          **extra) -> Iterator[None]:
    """Bind execution identifiers to every log line emitted inside the block."""
    fields = {"execution_id": execution_id, **extra}
    if workflow_id:
        fields["workflow_id"] = workflow_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def log_execution_time(logger: structlog.BoundLogger, operation: str,
                       start_time: float, end_time: float, **kwargs) -> None:
    """Log how long an engine operation took, in seconds."""
    logger.info(
        "Operation completed",
        operation=operation,
        execution_time_seconds=round(end_time - start_time, 4),
        **kwargs
    )
