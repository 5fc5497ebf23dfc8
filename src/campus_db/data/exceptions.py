"""
Database Exception Hierarchy

Custom exceptions raised by the connection manager and the operation executor. Every
exception carries structured context (severity, category, operation, original error)
and a ``retryable`` flag; terminal kinds are surfaced to callers untouched, transient
kinds are retried by the executor before they ever reach a caller.

Taxonomy:
- ConfigurationException: missing or invalid connection settings (terminal)
- ConnectionException: transient connect/network/server-selection failure
- TimeoutException: an operation exceeded its time budget
- ConnectionNotReadyException: operation attempted while not connected
- ShutdownException: connection closed by graceful shutdown (terminal)
- ValidationException, CastException, DuplicateKeyException,
  ConcurrencyConflictException, DocumentNotFoundException: data errors (terminal)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from campus_db.monitoring.metrics import database_errors_total


class DatabaseErrorSeverity(Enum):
    """Database error severity levels for monitoring and alerting"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DatabaseOperationType(Enum):
    """Database operation types for error classification"""
    READ = "read"
    WRITE = "write"
    CONNECTION = "connection"
    AGGREGATION = "aggregation"


class DatabaseErrorCategory(Enum):
    """Database error categories"""
    NETWORK = "network"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    DATA_INTEGRITY = "data_integrity"
    LIFECYCLE = "lifecycle"
    UNKNOWN = "unknown"


class DatabaseException(Exception):
    """
    Base exception class for all data-access errors.

    Provides structured error information including severity, category, operation
    context and the retry classification used by the operation executor.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        severity: DatabaseErrorSeverity = DatabaseErrorSeverity.MEDIUM,
        category: DatabaseErrorCategory = DatabaseErrorCategory.UNKNOWN,
        operation: Optional[DatabaseOperationType] = None,
        operation_name: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.operation = operation
        self.operation_name = operation_name
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)

        database_errors_total.labels(
            error_type=self.__class__.__name__,
            retryable=str(self.retryable).lower()
        ).inc()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "operation": self.operation.value if self.operation else None,
            "operation_name": self.operation_name,
            "retryable": self.retryable,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_error) if self.original_error else None
        }


class ConfigurationException(DatabaseException):
    """
    Exception for missing or invalid connection configuration.

    Never retried: a URI that is absent now will be absent on the next attempt too.
    """

    retryable = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', DatabaseErrorSeverity.CRITICAL)
        kwargs.setdefault('category', DatabaseErrorCategory.CONFIGURATION)
        kwargs.setdefault('operation', DatabaseOperationType.CONNECTION)
        super().__init__(message, **kwargs)


class ConnectionException(DatabaseException):
    """
    Exception for database connection failures.

    Covers network resets, authentication hiccups and server selection failures
    observed while connecting.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', DatabaseErrorSeverity.HIGH)
        kwargs.setdefault('category', DatabaseErrorCategory.NETWORK)
        kwargs.setdefault('operation', DatabaseOperationType.CONNECTION)
        super().__init__(message, **kwargs)


class ConnectionNotReadyException(ConnectionException):
    """Operation attempted while the connection state is not ``connected``."""

    def __init__(self, message: str = "Database connection not ready",
                 state: Optional[str] = None, **kwargs):
        self.state = state
        super().__init__(message, **kwargs)


class TimeoutException(DatabaseException):
    """
    Exception for database operation timeouts.

    The timeout only stops the wait; the driver call may still complete in the
    background and its result is discarded.
    """

    def __init__(self, message: str, timeout_duration: Optional[float] = None, **kwargs):
        kwargs.setdefault('category', DatabaseErrorCategory.TIMEOUT)
        self.timeout_duration = timeout_duration
        super().__init__(message, **kwargs)


class ShutdownException(DatabaseException):
    """Operation failed because graceful shutdown closed the connection."""

    retryable = False

    def __init__(self, message: str = "Database connection closed by shutdown", **kwargs):
        kwargs.setdefault('severity', DatabaseErrorSeverity.HIGH)
        kwargs.setdefault('category', DatabaseErrorCategory.LIFECYCLE)
        super().__init__(message, **kwargs)


class DataIntegrityException(DatabaseException):
    """Base class for terminal data errors surfaced to callers untouched."""

    retryable = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', DatabaseErrorSeverity.LOW)
        kwargs.setdefault('category', DatabaseErrorCategory.DATA_INTEGRITY)
        super().__init__(message, **kwargs)


class ValidationException(DataIntegrityException):
    """Document failed validation."""


class CastException(DataIntegrityException):
    """A value could not be cast to the required type, such as an ObjectId."""

    def __init__(self, message: str, value: Any = None, **kwargs):
        self.value = value
        super().__init__(message, **kwargs)


class DuplicateKeyException(DataIntegrityException):
    """Unique index violation."""


class DocumentNotFoundException(DataIntegrityException):
    """A document expected to exist was not found."""


class ConcurrencyConflictException(DataIntegrityException):
    """
    Optimistic concurrency conflict: the stored document version no longer matches
    the version the caller loaded.
    """

    def __init__(self, message: str, expected_version: Any = None, **kwargs):
        self.expected_version = expected_version
        super().__init__(message, **kwargs)


__all__ = [
    'DatabaseErrorSeverity',
    'DatabaseOperationType',
    'DatabaseErrorCategory',
    'DatabaseException',
    'ConfigurationException',
    'ConnectionException',
    'ConnectionNotReadyException',
    'TimeoutException',
    'ShutdownException',
    'DataIntegrityException',
    'ValidationException',
    'CastException',
    'DuplicateKeyException',
    'DocumentNotFoundException',
    'ConcurrencyConflictException',
]
