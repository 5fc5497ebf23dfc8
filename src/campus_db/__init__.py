"""
campus-db: resilient MongoDB data-access layer for the learning-platform backend.

Provides the shared connection lifecycle (connect with backoff, health, graceful
shutdown), a retry/timeout operation executor with typed collection helpers, and the
structured logging and metrics they report through.
"""

__version__ = "1.0.0"
__title__ = "campus-db"

# data before config: config.settings imports data.exceptions
from campus_db.data import (
    ConnectionManager,
    ConnectionState,
    DatabaseServices,
    ErrorClassifier,
    HealthMonitor,
    OperationExecutor,
)
from campus_db.config import DatabaseConfig, DatabaseSettings, RetryPolicy
from campus_db.monitoring import get_logger, mask_uri, setup_structured_logging

__all__ = [
    '__version__',
    'ConnectionManager',
    'ConnectionState',
    'DatabaseConfig',
    'DatabaseServices',
    'DatabaseSettings',
    'ErrorClassifier',
    'HealthMonitor',
    'OperationExecutor',
    'RetryPolicy',
    'get_logger',
    'mask_uri',
    'setup_structured_logging',
]
