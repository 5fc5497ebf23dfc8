"""
MongoDB Client Configuration

Turns ``DatabaseSettings`` into Motor client options and creates the single shared
``AsyncIOMotorClient`` owned by the connection manager.

Key Components:
- Connection pool sizing and driver timeouts per environment
- Write concern ``majority``, read concern ``majority``, configurable read preference
- Retryable reads and writes enabled at the driver level
- Optional PyMongo command listener logging every driver command at debug level
"""

from typing import Any, Callable, Dict, List, Optional

import structlog
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReadPreference, WriteConcern
from pymongo.monitoring import (
    CommandFailedEvent,
    CommandListener,
    CommandStartedEvent,
    CommandSucceededEvent,
)
from pymongo.read_concern import ReadConcern

from campus_db.config.settings import DatabaseSettings
from campus_db.data.exceptions import ConfigurationException

logger = structlog.get_logger(__name__)


class CommandLoggingListener(CommandListener):
    """
    PyMongo command listener logging driver commands at debug level.

    Only command names, target database and timings are logged; command documents
    can carry user data and are never emitted.
    """

    def __init__(self, log=None):
        self._logger = log or logger

    def started(self, event: CommandStartedEvent):
        self._logger.debug(
            "MongoDB command started",
            command=event.command_name,
            database=event.database_name,
            request_id=event.request_id,
        )

    def succeeded(self, event: CommandSucceededEvent):
        self._logger.debug(
            "MongoDB command succeeded",
            command=event.command_name,
            request_id=event.request_id,
            duration_ms=round(event.duration_micros / 1000.0, 3),
        )

    def failed(self, event: CommandFailedEvent):
        self._logger.debug(
            "MongoDB command failed",
            command=event.command_name,
            request_id=event.request_id,
            duration_ms=round(event.duration_micros / 1000.0, 3),
            failure=event.failure.get('errmsg') if isinstance(event.failure, dict) else None,
        )


class DatabaseConfig:
    """
    MongoDB client configuration for one environment.

    Wraps resolved settings and knows how to express them as Motor client options,
    read preference, read concern and write concern objects.
    """

    _READ_PREFERENCE_MAP = {
        'primary': ReadPreference.PRIMARY,
        'primaryPreferred': ReadPreference.PRIMARY_PREFERRED,
        'secondary': ReadPreference.SECONDARY,
        'secondaryPreferred': ReadPreference.SECONDARY_PREFERRED,
        'nearest': ReadPreference.NEAREST,
    }

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self.settings = settings or DatabaseSettings.from_env()

    @property
    def environment(self) -> str:
        return self.settings.environment

    @property
    def command_logging_enabled(self) -> bool:
        # command logging is a development aid only
        return self.settings.debug and self.environment == 'development'

    def get_client_options(self) -> Dict[str, Any]:
        """
        Build Motor client options.

        Returns:
            Keyword arguments for ``AsyncIOMotorClient``
        """
        timeout_ms = self.settings.driver_timeout_ms
        return {
            'serverSelectionTimeoutMS': timeout_ms,
            'socketTimeoutMS': timeout_ms,
            'connectTimeoutMS': timeout_ms,
            'maxPoolSize': self.settings.max_pool_size,
            'minPoolSize': self.settings.min_pool_size,
            'maxIdleTimeMS': self.settings.max_idle_time_ms,
            'heartbeatFrequencyMS': self.settings.heartbeat_frequency_ms,
            'waitQueueTimeoutMS': self.settings.wait_queue_timeout_ms,
            'retryWrites': True,
            'retryReads': True,
            'w': 'majority',
            'readConcernLevel': 'majority',
            'readPreference': self.settings.read_preference,
        }

    def get_read_preference(self):
        """Get the configured read preference, defaulting to ``primaryPreferred``."""
        return self._READ_PREFERENCE_MAP.get(
            self.settings.read_preference, ReadPreference.PRIMARY_PREFERRED
        )

    def get_write_concern(self) -> WriteConcern:
        return WriteConcern(w='majority')

    def get_read_concern(self) -> ReadConcern:
        return ReadConcern('majority')

    def create_client(
        self,
        event_listeners: Optional[List[Any]] = None,
        client_factory: Callable[..., Any] = AsyncIOMotorClient,
    ):
        """
        Create the Motor client.

        Args:
            event_listeners: PyMongo monitoring listeners to register on the client
            client_factory: Client constructor, ``AsyncIOMotorClient`` by default

        Returns:
            A client instance; connection happens lazily in the driver

        Raises:
            ConfigurationException: If no connection URI is configured
        """
        if not self.settings.uri:
            raise ConfigurationException(
                "MongoDB connection URI is not defined in environment variables"
            )

        listeners = list(event_listeners or [])
        if self.command_logging_enabled:
            listeners.append(CommandLoggingListener())
            logger.info("MongoDB command debugging enabled")

        options = self.get_client_options()
        if listeners:
            options['event_listeners'] = listeners

        return client_factory(self.settings.uri, **options)


__all__ = [
    'CommandLoggingListener',
    'DatabaseConfig',
]
