"""
Logging configuration using structlog for structured, JSON-based logging.

This module provides centralized logging setup for the engine. Every module
obtains its logger with ``structlog.get_logger(__name__)`` and logs snake_case
event names with keyword context; workflow tasks bind ``instance_id`` and
``correlation_id`` through contextvars so every line they emit carries them.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, a console format otherwise
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_workflow_context(instance_id: str, correlation_id: str) -> None:
    """Bind workflow identifiers to the current task's logging context.

    asyncio tasks copy the context at creation, so binding inside a
    workflow task does not leak into other instances.
    """
    structlog.contextvars.bind_contextvars(instance_id=instance_id, correlation_id=correlation_id)


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("gate_completed", action="build", retries_used=2)
    """
    return structlog.get_logger(name)
