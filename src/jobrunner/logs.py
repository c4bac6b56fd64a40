"""
Structured logging configuration using structlog.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog
from structlog.types import Processor


def setup_logging(level: str = "INFO", fmt: str = "console", stream=None) -> None:
    """Configure structured logging for workers and the CLI.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        fmt: "json" for production, "console" for development
        stream: Output stream (defaults to stderr so CLI stdout stays clean)
    """
    stream = stream or sys.stderr
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Configure standard library logging
    logging.basicConfig(format="%(message)s", stream=stream, level=log_level)

    # Shared processors for all outputs
    shared_processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if fmt == "json":
        processors: List[Processor] = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=stream.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )


def get_logger(name: Optional[str] = None) -> Any:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """Context manager binding fields (job_id, worker_id, ...) to every log line.

    Bindings live in contextvars, so each worker thread sees only its own.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.kwargs)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.kwargs.keys())
