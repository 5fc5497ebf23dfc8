"""
Retry Classification for Data-Access Errors

Decides whether an error raised by a data operation is worth another attempt.
Classification runs in three stages: a closed enumeration of terminal exception
types, an allow-list of error kind names for ODM layers built on top of the driver,
and a message-pattern fallback that logs a warning whenever it makes the decision.
Anything not matched is retryable.
"""

import re
from typing import Optional, Tuple, Type

from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError, WriteError

from campus_db.data.exceptions import (
    CastException,
    ConcurrencyConflictException,
    ConfigurationException,
    DocumentNotFoundException,
    DuplicateKeyException,
    ShutdownException,
    ValidationException,
)
from campus_db.monitoring.logging import DatabaseLogger, get_logger


# Server error code for a write rejected by collection schema validation
DOCUMENT_VALIDATION_FAILURE = 121

TERMINAL_EXCEPTION_TYPES: Tuple[Type[BaseException], ...] = (
    ValidationException,
    CastException,
    DuplicateKeyException,
    ConcurrencyConflictException,
    DocumentNotFoundException,
    ConfigurationException,
    ShutdownException,
    DuplicateKeyError,
    InvalidId,
)

NON_RETRYABLE_KIND_NAMES = frozenset([
    'ValidationError',
    'CastError',
    'DocumentNotFoundError',
    'OverwriteModelError',
    'ParallelSaveError',
    'StrictModeError',
    'VersionError',
])

NON_RETRYABLE_MESSAGE_PATTERNS = (
    re.compile(r'duplicate key error', re.IGNORECASE),
    re.compile(r'validation failed', re.IGNORECASE),
    re.compile(r'cast to objectid failed', re.IGNORECASE),
    re.compile(r'path .* is required', re.IGNORECASE),
    re.compile(r'unique constraint', re.IGNORECASE),
)


class ErrorClassifier:
    """Classifies errors as retryable or terminal."""

    def __init__(self, logger: Optional[DatabaseLogger] = None):
        self.logger = logger or get_logger(__name__)

    def is_non_retryable(self, error: BaseException) -> bool:
        """
        Return True when re-attempting the operation cannot succeed.

        Args:
            error: The exception raised by the attempt

        Returns:
            True for terminal errors, False for transient or unknown ones
        """
        if isinstance(error, TERMINAL_EXCEPTION_TYPES):
            return True
        if isinstance(error, WriteError) and error.code == DOCUMENT_VALIDATION_FAILURE:
            return True

        if type(error).__name__ in NON_RETRYABLE_KIND_NAMES:
            return True

        message = str(error)
        for pattern in NON_RETRYABLE_MESSAGE_PATTERNS:
            if pattern.search(message):
                self.logger.warning(
                    "Error classified as non-retryable by message pattern",
                    error_type=type(error).__name__,
                    pattern=pattern.pattern,
                )
                return True

        return False

    def is_retryable(self, error: BaseException) -> bool:
        return not self.is_non_retryable(error)


__all__ = [
    'DOCUMENT_VALIDATION_FAILURE',
    'ErrorClassifier',
    'NON_RETRYABLE_KIND_NAMES',
    'NON_RETRYABLE_MESSAGE_PATTERNS',
    'TERMINAL_EXCEPTION_TYPES',
]
