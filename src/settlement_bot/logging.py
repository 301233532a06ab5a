"""Structured logging for the settlement bot.

structlog renders through the stdlib root handler so that ccxt and
aiosqlite records share one output stream. LOG_FORMAT=json switches to
machine-readable lines; the default is the colored console renderer.

Context bound with log_context() lives in contextvars, so it follows
the asyncio task that bound it and any task created inside the block.
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

_QUIET_LIBRARIES = ("ccxt", "aiosqlite", "asyncio")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(log_level: str = "INFO") -> None:
    """Route structlog through stdlib logging at log_level."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer = _renderer(os.environ.get("LOG_FORMAT", "console").lower())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind key/value pairs to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
