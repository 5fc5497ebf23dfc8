"""
Configuration package: environment-driven settings and MongoDB client configuration.
"""

from campus_db.config.settings import DatabaseSettings, RetryPolicy
from campus_db.config.database import CommandLoggingListener, DatabaseConfig

__all__ = [
    'CommandLoggingListener',
    'DatabaseConfig',
    'DatabaseSettings',
    'RetryPolicy',
]
