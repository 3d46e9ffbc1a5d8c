"""
Structured logging utilities for production environments.

Provides:
- Structured JSON logging
- Request ID tracking
- Performance logging for store operations
"""

import json
import logging
import time
from typing import Any
from contextvars import ContextVar, Token

# Context variable for request/operation tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
operation_var: ContextVar[str] = ContextVar("operation", default="")

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in JSON format with consistent fields:
    - timestamp
    - level
    - message
    - request_id (if available)
    - operation (if available)
    - extra fields
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        operation = operation_var.get()
        if operation:
            log_data["operation"] = operation

        for name, value in vars(record).items():
            if name not in _RESERVED_ATTRS and not name.startswith("_"):
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class PerformanceLogger:
    """
    Performance logging context manager.

    Logs operation duration and outcome. Works with both ``with`` and
    ``async with``.

    Example:
        with PerformanceLogger("write", logger=logger, record_type="User"):
            store.write(user)
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger,
        level: int = logging.DEBUG,
        expected: tuple[type[BaseException], ...] = (),
        **context: Any
    ):
        """
        Initialize performance logger.

        Args:
            operation: Operation name
            logger: Logger instance
            level: Level for start/completion records (failures log at ERROR)
            expected: Exception types that are outcomes rather than failures;
                they are logged at ``level`` as completions
            **context: Additional context fields
        """
        self.operation = operation
        self.logger = logger
        self.level = level
        self.expected = expected
        self.context = context
        self.start_time = None
        self.duration_ms = None
        self._token: Token | None = None

    def __enter__(self):
        """Start timing."""
        self.start_time = time.perf_counter()
        self._token = operation_var.set(self.operation)

        self.logger.log(
            self.level,
            f"Starting operation: {self.operation}",
            extra={"event": "operation_start", **self.context}
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Log duration and outcome."""
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000

        if exc_type and not issubclass(exc_type, self.expected):
            self.logger.error(
                f"Operation failed: {self.operation}",
                extra={
                    "event": "operation_failed",
                    "duration_ms": round(self.duration_ms, 2),
                    "error_type": exc_type.__name__,
                    "error": str(exc_val),
                    **self.context
                }
            )
        else:
            extra = {
                "event": "operation_completed",
                "duration_ms": round(self.duration_ms, 2),
                **self.context
            }
            if exc_type:
                extra["error_type"] = exc_type.__name__
            self.logger.log(self.level, f"Operation completed: {self.operation}", extra=extra)

        if self._token is not None:
            operation_var.reset(self._token)
            self._token = None
        return False

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)


def setup_production_logging(
    level: str = "INFO",
    format: str = "json"
) -> None:
    """
    Setup production-ready logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Format type ("json" or "text")

    Example:
        setup_production_logging(level="INFO", format="json")
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()

    if format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
        )

    root_logger.addHandler(handler)


def log_with_context(logger: logging.Logger, level: str, message: str, **context):
    """
    Log message with additional context fields.

    Args:
        logger: Logger instance
        level: Log level
        message: Log message
        **context: Additional context fields
    """
    log_func = getattr(logger, level.lower())
    log_func(message, extra=context)
