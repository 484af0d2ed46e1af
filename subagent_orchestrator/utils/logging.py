"""
Structured logging for the Subagent Orchestrator.

Every entry carries the service name and, when bound through
``bind_log_context``, the agent, task or workflow it concerns.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, TextIO

import structlog

SERVICE_NAME = "subagent-orchestrator"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def add_service_name(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor stamping the service name on each entry."""
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def configure_logging(level: str = "INFO", json_format: bool = False, stream: Optional[TextIO] = None) -> None:
    """
    Configure structured logging for the orchestrator.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit one JSON object per line instead of console output
        stream: Output stream, stdout by default

    Raises:
        ValueError: Unknown logging level
    """
    level_name = level.upper()
    if level_name not in _LEVELS:
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, level_name),
        force=True,
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bind_log_context(**context: Any) -> Iterator[None]:
    """Attach agent/task/workflow ids to every entry logged in this context."""
    with structlog.contextvars.bound_contextvars(**context):
        yield


class LoggerMixin:
    """
    Gives a class a logger named after it, bound with ``component``, plus
    helpers for logging long-running operations.
    """

    @property
    def logger(self) -> structlog.BoundLogger:
        if not hasattr(self, '_logger'):
            cls = self.__class__
            self._logger = get_logger(f"{cls.__module__}.{cls.__name__}").bind(component=cls.__name__)
        return self._logger

    def log_operation_start(self, operation: str, **context: Any) -> None:
        self.logger.debug("Operation started", operation=operation, **context)

    def log_operation_success(self, operation: str, duration_ms: Optional[float] = None, **context: Any) -> None:
        if duration_ms is not None:
            context["duration_ms"] = round(duration_ms, 3)
        self.logger.info("Operation completed", operation=operation, **context)

    def log_operation_error(self, operation: str, error: Exception, **context: Any) -> None:
        self.logger.error(
            "Operation failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__,
            **context
        )

    @contextmanager
    def timed_operation(self, operation: str, **context: Any) -> Iterator[None]:
        """Log start, then success with its duration or the error, which is re-raised."""
        self.log_operation_start(operation, **context)
        started = time.perf_counter()
        try:
            yield
        except Exception as e:
            self.log_operation_error(operation, e, **context)
            raise
        self.log_operation_success(operation, duration_ms=(time.perf_counter() - started) * 1000, **context)
