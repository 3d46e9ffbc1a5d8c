"""
Exception hierarchy for vertector_redisobj.

Every error raised by the mapping engine derives from RedisObjError, which
keeps the underlying driver exception (if any) and logs itself on creation.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class RedisObjError(Exception):
    """
    Base exception for object store errors.

    Wraps underlying redis-py exceptions with additional context
    and ensures proper logging.
    """

    log_level = logging.ERROR

    def __init__(self, message: str, original_error: Exception | None = None):
        """
        Initialize store error.

        Args:
            message: Human-readable error message
            original_error: Original exception that caused this error
        """
        super().__init__(message)
        self.original_error = original_error
        self.message = message

        if original_error:
            logger.log(
                self.log_level,
                f"{self.__class__.__name__}: {message}",
                exc_info=original_error,
                extra={
                    "error_type": type(original_error).__name__,
                    "error_message": str(original_error)
                }
            )
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {message}")

    def __str__(self) -> str:
        """Return formatted error message."""
        if self.original_error:
            return f"{self.message} (caused by {type(self.original_error).__name__}: {self.original_error})"
        return self.message

    def __repr__(self) -> str:
        """Return detailed error representation."""
        return f"{self.__class__.__name__}(message={self.message!r}, original_error={self.original_error!r})"


class InvalidObjectError(RedisObjError):
    """
    Raised when the target of a read or write is not a usable record.

    Covers None, classes passed instead of instances, non-record values,
    missing nested record instances and frozen records on read. Always
    raised before any I/O.
    """

    def __init__(self, message: str, value: Any = None):
        self.value = value
        super().__init__(message)


class InvalidFieldTypeError(RedisObjError):
    """
    Raised when a field value or type has no string wire representation.

    Container element types are checked when a plan is compiled; scalar
    values are checked when they are encoded or decoded.
    """

    def __init__(self, message: str, field: str | None = None, original_error: Exception | None = None):
        self.field = field
        if field:
            message = f"Invalid field type for '{field}': {message}"
        super().__init__(message, original_error)


class InvalidDefinitionError(RedisObjError):
    """
    Raised when a record type cannot be mapped consistently.

    For example two identity markers on one record, or a record that
    contains itself.
    """

    def __init__(self, message: str, type_name: str | None = None):
        self.type_name = type_name
        if type_name:
            message = f"Invalid record definition '{type_name}': {message}"
        super().__init__(message)


class ObjectNotFoundError(RedisObjError):
    """
    Raised when a read targets a keyed record that has never been stored.

    This is an expected outcome for lookups, so it is logged at DEBUG.
    """

    log_level = logging.DEBUG

    def __init__(self, message: str = "Object not found", key: str | None = None):
        self.key = key
        if key:
            message = f"{message} (key={key})"
        super().__init__(message)


class CacheFailureError(RedisObjError):
    """
    Raised when the content hash could not be computed or exchanged.

    A cache failure aborts the whole read or write.
    """

    def __init__(self, message: str, original_error: Exception | None = None, key: str | None = None):
        self.key = key
        if key:
            message = f"{message} (key={key})"
        super().__init__(message, original_error)


class RedisCommandError(RedisObjError):
    """
    Raised when Redis reports a failure for a queued command or a pipeline.

    Absent keys are not failures; they decode to zero values.
    """

    def __init__(self, message: str, original_error: Exception | None = None, command: str | None = None):
        self.command = command
        if command:
            message = f"{message} [Command: {command}]"
        super().__init__(message, original_error)


class StoreTimeoutError(RedisCommandError):
    """
    Raised when a round trip does not complete within the query timeout.
    """

    def __init__(
        self,
        message: str = "Operation timed out",
        original_error: Exception | None = None,
        timeout_seconds: float | None = None,
        operation_type: str | None = None
    ):
        self.timeout_seconds = timeout_seconds
        self.operation_type = operation_type

        details = []
        if operation_type:
            details.append(f"operation={operation_type}")
        if timeout_seconds:
            details.append(f"timeout={timeout_seconds}s")

        if details:
            message = f"{message} ({', '.join(details)})"

        super().__init__(message, original_error)
