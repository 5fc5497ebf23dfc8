"""
MongoDB Connection Manager

Owns the lifecycle of the single shared Motor client for the process:

- Initial connect with bounded exponential backoff (tenacity ``AsyncRetrying``),
  verified by a ``ping`` round trip
- Driver topology events bridged to connection lifecycle logging and state updates
- Periodic health sampling through ``HealthMonitor``
- Health reports with ping latency
- Graceful shutdown on SIGINT/SIGTERM with a watchdog forcing termination

Connection strings never reach the logs unmasked. Exhausted connection retries are
propagated to the caller; the manager never exits the process on connect failure.
"""

import asyncio
import inspect
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import ConfigurationError as PyMongoConfigurationError
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from campus_db.config.database import DatabaseConfig
from campus_db.config.settings import DatabaseSettings, RetryPolicy
from campus_db.data.events import ConnectionObserver, ConnectionState, TopologyEventBridge
from campus_db.data.exceptions import (
    ConfigurationException,
    ConnectionNotReadyException,
    ShutdownException,
)
from campus_db.data.monitoring import HealthMonitor
from campus_db.monitoring.logging import DatabaseLogger, get_logger, mask_uri
from campus_db.monitoring.metrics import connection_attempts_total
from campus_db.monitoring.metrics import connection_state as connection_state_gauge


SERVICE_NAME = "MongoDB"
DEFAULT_PORT = 27017
FORCED_SHUTDOWN_MESSAGE = "Could not close connections in time, forcefully shutting down"


def _is_connect_retryable(error: BaseException) -> bool:
    return isinstance(error, Exception) and not isinstance(
        error, (ConfigurationException, ShutdownException)
    )


def parse_address(uri: Optional[str]) -> Tuple[Optional[str], int]:
    """
    Extract the first host and its port from a connection URI without DNS lookups.

    Credentials are discarded. SRV URIs report the default port.
    """
    if not uri:
        return None, DEFAULT_PORT
    netloc = urlsplit(uri).netloc.rpartition('@')[2]
    first = netloc.split(',')[0]
    if first.startswith('['):
        host, _, rest = first[1:].partition(']')
        port = rest.lstrip(':')
    else:
        host, _, port = first.partition(':')
    try:
        return host or None, int(port) if port else DEFAULT_PORT
    except ValueError:
        return host or None, DEFAULT_PORT


class ConnectionManager(ConnectionObserver):
    """
    Lifecycle owner of the shared MongoDB connection.

    Exactly one instance should exist per process; the operation executor reads its
    state and never creates a connection of its own. Driver events arrive on PyMongo
    monitor threads, so state transitions happen under a lock.

    Args:
        settings: Resolved settings, read from the environment when omitted
        config: Client configuration built from ``settings`` when omitted
        logger: Logger collaborator
        client_factory: Motor client constructor
        sleep: Awaitable sleep used between connection attempts
        terminate: Process termination function called by ``shutdown``
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None,
                 config: Optional[DatabaseConfig] = None,
                 logger: Optional[DatabaseLogger] = None,
                 client_factory: Callable[..., Any] = AsyncIOMotorClient,
                 sleep: Callable = asyncio.sleep,
                 terminate: Callable[[int], Any] = sys.exit):
        self.settings = settings or (config.settings if config else DatabaseSettings.from_env())
        self.config = config or DatabaseConfig(self.settings)
        self.logger = logger or get_logger(__name__)
        self._client_factory = client_factory
        self._sleep = sleep
        self._terminate = terminate

        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._client = None
        self._shutting_down = False
        self._shutdown_task: Optional[asyncio.Task] = None

        self.health_monitor = HealthMonitor(
            lambda: self.state,
            interval=self.settings.health_check_interval,
            logger=self.logger,
        )

    # State

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def masked_uri(self) -> str:
        return mask_uri(self.settings.uri)

    def _set_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._state = state
        connection_state_gauge.set(state.code)

    # Accessors

    @property
    def client(self):
        if self._client is None:
            raise ConnectionNotReadyException(
                "MongoDB client not initialized. Call connect() first.",
                state=self.state.value,
            )
        return self._client

    @property
    def database(self):
        return self.client.get_database(
            self.settings.database_name,
            read_preference=self.config.get_read_preference(),
            write_concern=self.config.get_write_concern(),
            read_concern=self.config.get_read_concern(),
        )

    def get_collection(self, name: str):
        """Get a collection handle of the configured database."""
        return self.database[name]

    # Connect

    async def connect(self, policy: Optional[RetryPolicy] = None):
        """
        Connect to MongoDB with retry and exponential backoff.

        Makes up to ``policy.max_retries + 1`` attempts, waiting
        ``min(base_delay * 2**n, max_delay)`` seconds after the n-th failure.

        Args:
            policy: Connection retry policy, the configured one by default

        Returns:
            The connected Motor client

        Raises:
            ConfigurationException: If no connection URI is configured
            ShutdownException: If shutdown has started
            Exception: The last underlying error once retries are exhausted
        """
        policy = policy or self.settings.connect_policy

        if not self.settings.uri:
            raise ConfigurationException(
                "MongoDB connection URI is not defined in environment variables"
            )
        if self._shutting_down:
            raise ShutdownException("Cannot connect while shutting down")
        if self._client is not None:
            return self._client

        self.health_monitor.start()
        attempts = policy.max_retries + 1

        def log_retry(retry_state):
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            self.logger.info(
                f"Retrying MongoDB connection in {delay}s "
                f"(attempt {retry_state.attempt_number}/{policy.max_retries})",
                delay=delay,
                attempt=retry_state.attempt_number,
                max_retries=policy.max_retries,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=policy.base_delay, max=policy.max_delay),
            retry=retry_if_exception(_is_connect_retryable),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    client = await self._attempt_connect(
                        attempt.retry_state.attempt_number, policy
                    )
        except (ConfigurationException, ShutdownException):
            raise
        except Exception as error:
            self.logger.error(
                f"Failed to connect to MongoDB after {attempts} attempts",
                error=error,
                uri=self.masked_uri,
                attempts=attempts,
            )
            raise

        return client

    async def _attempt_connect(self, attempt_number: int, policy: RetryPolicy):
        if self._shutting_down:
            raise ShutdownException("Connection attempt aborted by shutdown")

        self._set_state(ConnectionState.CONNECTING)
        bridge = TopologyEventBridge(self, self.config.get_read_preference())
        try:
            client = self._create_client(bridge)
            try:
                await client.admin.command('ping')
            except BaseException:
                await self._close_client(client)
                raise
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as error:
            self._set_state(ConnectionState.DISCONNECTED)
            connection_attempts_total.labels(outcome='failure').inc()
            self.logger.connection.error(
                SERVICE_NAME,
                error,
                uri=self.masked_uri,
                attempt=attempt_number,
                max_retries=policy.max_retries,
            )
            raise

        with self._lock:
            self._client = client
            self._state = ConnectionState.CONNECTED
        connection_state_gauge.set(ConnectionState.CONNECTED.code)
        connection_attempts_total.labels(outcome='success').inc()

        host, port = parse_address(self.settings.uri)
        self.logger.connection.success(
            SERVICE_NAME,
            host=host,
            database=self.settings.database_name,
            port=port,
        )
        return client

    def _create_client(self, bridge: TopologyEventBridge):
        try:
            return self.config.create_client(
                event_listeners=[bridge],
                client_factory=self._client_factory,
            )
        except PyMongoConfigurationError as error:
            raise ConfigurationException(
                f"Invalid MongoDB connection settings: {mask_uri(str(error))}",
                original_error=error,
            ) from error

    @staticmethod
    async def _close_client(client) -> None:
        # Motor closes synchronously; awaitable closes are awaited
        result = client.close()
        if inspect.isawaitable(result):
            await result

    # Driver events (PyMongo monitor threads)

    def _active(self) -> bool:
        with self._lock:
            return self._client is not None

    def on_connected(self, **details) -> None:
        if not self._active():
            return
        self._set_state(ConnectionState.CONNECTED)
        host, _ = parse_address(self.settings.uri)
        self.logger.connection.success(
            SERVICE_NAME,
            host=host,
            database=self.settings.database_name,
            message="Connection established",
        )

    def on_error(self, error: BaseException, **details) -> None:
        if not self._active():
            return
        self.logger.connection.error(SERVICE_NAME, error, **details)
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError)) or \
                'timeout' in str(error).lower():
            self.logger.error(
                "MongoDB timeout detected, connection may be unstable",
                error=error,
                timestamp=datetime.now(timezone.utc).isoformat(),
            )

    def on_disconnected(self, **details) -> None:
        if not self._active():
            return
        self._set_state(ConnectionState.DISCONNECTED)
        self.logger.connection.closed(SERVICE_NAME, **details)

    def on_reconnected(self, **details) -> None:
        if not self._active():
            return
        self._set_state(ConnectionState.CONNECTED)
        host, _ = parse_address(self.settings.uri)
        self.logger.connection.success(
            SERVICE_NAME,
            host=host,
            database=self.settings.database_name,
            message="Reconnected successfully",
        )

    # Health

    async def health(self) -> Dict[str, Any]:
        """
        Report connection health.

        Healthy only when the state is ``connected`` and a ``ping`` round trip
        succeeds; the ping latency is reported as ``ping_ms``.
        """
        state = self.state
        host, _ = parse_address(self.settings.uri)
        report = {
            'healthy': state is ConnectionState.CONNECTED,
            'state': state.value,
            'state_code': state.code,
            'host': host,
            'database': self.settings.database_name,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

        client = self._client
        if state is ConnectionState.CONNECTED and client is not None:
            started = time.perf_counter()
            try:
                await asyncio.wait_for(
                    client.admin.command('ping'),
                    timeout=self.settings.operation_policy.operation_timeout,
                )
            except Exception as error:
                self.logger.error("Database health check failed", error=error)
                report['healthy'] = False
                message = str(error)
                report['error'] = mask_uri(message) if message else type(error).__name__
            else:
                report['ping_ms'] = round((time.perf_counter() - started) * 1000, 3)

        return report

    # Close and shutdown

    async def close(self, **details) -> None:
        """
        Stop the health monitor and close the client. Idempotent.

        Args:
            **details: Extra fields for the ``connection closed`` log event
        """
        await self.health_monitor.stop()

        with self._lock:
            client, self._client = self._client, None
            if client is not None:
                self._state = ConnectionState.DISCONNECTING
            else:
                self._state = ConnectionState.DISCONNECTED
        if client is None:
            connection_state_gauge.set(ConnectionState.DISCONNECTED.code)
            return

        connection_state_gauge.set(ConnectionState.DISCONNECTING.code)
        try:
            await self._close_client(client)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)
        self.logger.connection.closed(SERVICE_NAME, **details)

    async def shutdown(self, signal_name: Optional[str] = None) -> None:
        """
        Close the connection and terminate the process.

        Exits with 0 after a clean close, with 1 when close raises, and with 1 when
        close does not finish within the shutdown timeout.
        """
        if self._shutting_down:
            self.logger.warning("Shutdown already in progress", signal=signal_name)
            return
        self._shutting_down = True
        self.logger.info("Graceful shutdown initiated", signal=signal_name)

        exit_code = 0
        try:
            await asyncio.wait_for(
                self._close_for_shutdown(signal_name),
                timeout=self.settings.shutdown_timeout,
            )
        except asyncio.TimeoutError:
            self.logger.critical(
                FORCED_SHUTDOWN_MESSAGE,
                signal=signal_name,
                timeout=self.settings.shutdown_timeout,
            )
            exit_code = 1
        except Exception as error:
            self.logger.error("Error during graceful shutdown", error=error, signal=signal_name)
            exit_code = 1

        self._terminate(exit_code)

    async def _close_for_shutdown(self, signal_name: Optional[str]) -> None:
        if self.state is ConnectionState.DISCONNECTED and self._client is None:
            await self.health_monitor.stop()
            return
        await self.close(reason="shutdown", graceful=True, signal=signal_name)

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Route SIGINT, SIGTERM and unhandled loop exceptions into ``shutdown``.

        Args:
            loop: Event loop to install on, the running loop by default
        """
        loop = loop or asyncio.get_running_loop()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._schedule_shutdown, loop, sig.name)
            except NotImplementedError:
                # event loops without add_signal_handler (Windows)
                signal.signal(
                    sig,
                    lambda signum, frame: loop.call_soon_threadsafe(
                        self._schedule_shutdown, loop, signal.Signals(signum).name
                    ),
                )

        loop.set_exception_handler(self._handle_loop_exception)
        self.logger.debug("Shutdown signal handlers installed")

    def _schedule_shutdown(self, loop: asyncio.AbstractEventLoop, signal_name: str) -> None:
        if self._shutdown_task is not None:
            return
        self.logger.info(f"Received {signal_name}, shutting down", signal=signal_name)
        self._shutdown_task = loop.create_task(self.shutdown(signal_name))

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get('exception')
        self.logger.critical(
            "Unhandled exception in event loop",
            error=error,
            context_message=context.get('message'),
        )
        self._schedule_shutdown(loop, 'uncaughtException')


__all__ = [
    'ConnectionManager',
    'ConnectionState',
    'DEFAULT_PORT',
    'FORCED_SHUTDOWN_MESSAGE',
    'SERVICE_NAME',
    'parse_address',
]
