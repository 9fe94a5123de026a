"""
procpool logging - structured logging via structlog.

Manifesto:
    The runner's own stdout/stderr carry task output that users diff
    against expectations, so diagnostic logging must never leak into
    them by accident. This module configures structlog once, writes to
    stderr, and keeps the default level at WARNING so the scheduler's
    debug events only appear when asked for.

Architecture:
    ::

        configure_logging(level="DEBUG", json_format=None, service="procpool")
            │
            ▼
        structlog processor chain:
          1. TimeStamper (iso)
          2. merge_contextvars
          3. add_log_level, add_logger_name (name given to get_logger)
          4. add_service_metadata
          5. JSONRenderer (not a tty) or ConsoleRenderer (tty)

        logger = get_logger(__name__)
        logger.debug("task_started", slot=0, pid=4242)

Examples:
    >>> from procpool.core.logging import configure_logging, get_logger
    >>> configure_logging(level="DEBUG", service="procpool")
    >>> logger = get_logger(__name__)
    >>> logger.debug("task_started", slot=0, pid=4242)

Guardrails:
    - The stderr stream is looked up at emit time, so swapping
      ``sys.stderr`` (test runners, CLI harnesses) never leaves a logger
      bound to a closed stream.
    - ``get_logger`` returns a lazy proxy, so module-level loggers pick
      up whatever ``configure_logging`` installed last.

Tags:
    logging, structlog, observability, procpool
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from procpool.core.errors import ConfigError, ErrorContext

_SERVICE_NAME = "procpool"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def _add_logger_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add the name passed to ``get_logger`` as the ``logger`` key."""
    name = getattr(logger, "name", None)
    if name:
        event_dict.setdefault("logger", name)
    return event_dict


class _NamedPrintLogger(structlog.PrintLogger):
    """PrintLogger that remembers the name it was requested under."""

    def __init__(self, name: str | None = None):
        super().__init__(file=sys.stderr)
        self.name = name


def _stderr_logger_factory(*args: Any) -> _NamedPrintLogger:
    return _NamedPrintLogger(args[0] if args else None)


def configure_logging(
    level: str = "WARNING",
    json_format: bool | None = None,
    service: str = "procpool",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if stderr is not a tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs

    Raises:
        ConfigError: *level* is not a known log level.
    """
    level_name = level.upper()
    if level_name not in LOG_LEVELS:
        raise ConfigError(
            f"invalid log level {level!r} (choose from {', '.join(LOG_LEVELS)})",
            context=ErrorContext(metadata={"log_level": level}),
        )

    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name)
        ),
        context_class=dict,
        logger_factory=_stderr_logger_factory,
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run="testsuite", jobs=4):
            logger.info("run_started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args) -> None:
        unbind_context(*self._context.keys())

    async def __aenter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    async def __aexit__(self, *args) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
