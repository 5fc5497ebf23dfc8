"""
Data Access Layer Package

Exposes the resilient MongoDB data-access core and the ``DatabaseServices`` lifecycle
container that wires it together once per process:

- ``ConnectionManager``: connect with backoff, driver event logging, health, shutdown
- ``OperationExecutor``: retry/timeout wrapper and typed collection helpers
- ``ErrorClassifier``: retryable vs terminal classification
- ``HealthMonitor``: background connection state sampling

Usage:
    services = DatabaseServices()
    await services.start()
    courses = services.get_collection('courses')
    course = await services.executor.find_one(courses, {'slug': 'python-101'})
"""

import asyncio
import sys
from typing import Any, Callable, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient

# exceptions first: the config package imports them while this package initializes
from campus_db.data.exceptions import (
    CastException,
    ConcurrencyConflictException,
    ConfigurationException,
    ConnectionException,
    ConnectionNotReadyException,
    DatabaseException,
    DocumentNotFoundException,
    DuplicateKeyException,
    ShutdownException,
    TimeoutException,
    ValidationException,
)
from campus_db.data.classifier import ErrorClassifier
from campus_db.data.events import ConnectionObserver, ConnectionState, TopologyEventBridge
from campus_db.data.monitoring import HealthMonitor
from campus_db.data.connection import ConnectionManager
from campus_db.data.executor import OperationContext, OperationExecutor
from campus_db.config.settings import DatabaseSettings
from campus_db.monitoring.logging import DatabaseLogger, get_logger


class DatabaseServices:
    """
    Lifecycle container for the data-access layer.

    Owns one ``ConnectionManager`` and one ``OperationExecutor`` bound to it. Build
    it once at process start and pass it to the code that needs data access.
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None,
                 logger: Optional[DatabaseLogger] = None,
                 client_factory: Callable[..., Any] = AsyncIOMotorClient,
                 sleep: Callable = asyncio.sleep,
                 terminate: Callable[[int], Any] = sys.exit):
        self.settings = settings or DatabaseSettings.from_env()
        self.logger = logger or get_logger('campus_db.data')
        self.manager = ConnectionManager(
            settings=self.settings,
            logger=self.logger,
            client_factory=client_factory,
            sleep=sleep,
            terminate=terminate,
        )
        self.executor = OperationExecutor(
            self.manager,
            policy=self.settings.operation_policy,
            logger=self.logger,
            sleep=sleep,
        )

    @property
    def is_connected(self) -> bool:
        return self.manager.is_connected

    async def start(self, install_signal_handlers: bool = True):
        """
        Connect and, optionally, install the shutdown signal handlers.

        Returns:
            The connected client
        """
        client = await self.manager.connect()
        if install_signal_handlers:
            self.manager.install_signal_handlers()
        return client

    async def stop(self) -> None:
        await self.manager.close(reason="stop", graceful=True)

    def get_collection(self, name: str):
        return self.manager.get_collection(name)

    async def health(self) -> Dict[str, Any]:
        return await self.manager.health()

    async def __aenter__(self) -> 'DatabaseServices':
        await self.start(install_signal_handlers=False)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


__all__ = [
    'CastException',
    'ConcurrencyConflictException',
    'ConfigurationException',
    'ConnectionException',
    'ConnectionManager',
    'ConnectionNotReadyException',
    'ConnectionObserver',
    'ConnectionState',
    'DatabaseException',
    'DatabaseServices',
    'DocumentNotFoundException',
    'DuplicateKeyException',
    'ErrorClassifier',
    'HealthMonitor',
    'OperationContext',
    'OperationExecutor',
    'ShutdownException',
    'TimeoutException',
    'TopologyEventBridge',
    'ValidationException',
]
