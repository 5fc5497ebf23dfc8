"""
Data-Access Layer Settings

Environment-specific settings for the MongoDB connection manager and operation executor,
loaded from the process environment via python-dotenv. Provides the two retry policies
(connection and operation), pool sizing, driver timeouts and lifecycle intervals.

Environment selection follows ``APP_ENV`` (fallback ``ENVIRONMENT``): production uses
120s driver timeouts and a larger pool, every other environment uses 30s timeouts.
"""

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

from campus_db.data.exceptions import ConfigurationException

# Load environment variables early
load_dotenv()


VALID_ENVIRONMENTS = ('development', 'testing', 'staging', 'production')

READ_PREFERENCES = (
    'primary',
    'primaryPreferred',
    'secondary',
    'secondaryPreferred',
    'nearest',
)

DEFAULT_DATABASE = 'test'


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff policy.

    Attributes:
        max_retries: Retry budget; the connection policy makes ``max_retries + 1``
            attempts, the operation policy makes ``max_retries`` attempts in total
        base_delay: Delay unit in seconds
        max_delay: Cap applied to every computed delay, in seconds
        operation_timeout: Per-attempt time budget in seconds
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    operation_timeout: float = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationException(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationException("retry delays must be non-negative")
        if self.operation_timeout <= 0:
            raise ConfigurationException(
                f"operation_timeout must be positive, got {self.operation_timeout}"
            )

    def delay_for(self, n: int) -> float:
        """Return ``min(base_delay * 2**n, max_delay)``."""
        return min(self.base_delay * (2 ** n), self.max_delay)

    @classmethod
    def connection_default(cls) -> 'RetryPolicy':
        return cls(max_retries=5, base_delay=1.0, max_delay=30.0)

    @classmethod
    def operation_default(cls) -> 'RetryPolicy':
        return cls(max_retries=3, base_delay=1.0, max_delay=10.0, operation_timeout=30.0)


def _env(environ: Mapping[str, str], *names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = environ.get(name)
        if value not in (None, ''):
            return value
    return default


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw in (None, ''):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationException(f"{name} must be an integer, got {raw!r}")


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw in (None, ''):
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationException(f"{name} must be a number, got {raw!r}")


def _bool(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = environ.get(name)
    if raw in (None, ''):
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class DatabaseSettings:
    """
    Resolved settings for one process.

    ``uri`` may be ``None`` here; the connection manager raises
    ``ConfigurationException`` when asked to connect without one.
    """

    uri: Optional[str] = None
    database: Optional[str] = None
    environment: str = 'development'
    debug: bool = False
    read_preference: str = 'primaryPreferred'
    max_pool_size: int = 10
    min_pool_size: int = 5
    max_idle_time_ms: int = 600000
    heartbeat_frequency_ms: int = 5000
    wait_queue_timeout_ms: int = 60000
    connect_policy: RetryPolicy = field(default_factory=RetryPolicy.connection_default)
    operation_policy: RetryPolicy = field(default_factory=RetryPolicy.operation_default)
    health_check_interval: float = 30.0
    shutdown_timeout: float = 30.0

    def __post_init__(self):
        if self.environment not in VALID_ENVIRONMENTS:
            raise ConfigurationException(
                f"Unknown environment {self.environment!r}; "
                f"expected one of {', '.join(VALID_ENVIRONMENTS)}"
            )
        if self.read_preference not in READ_PREFERENCES:
            raise ConfigurationException(
                f"Invalid read preference {self.read_preference!r}"
            )
        if self.min_pool_size < 0 or self.max_pool_size < 1 or self.min_pool_size > self.max_pool_size:
            raise ConfigurationException(
                f"Invalid pool sizing min={self.min_pool_size} max={self.max_pool_size}"
            )
        if self.health_check_interval <= 0 or self.shutdown_timeout <= 0:
            raise ConfigurationException("intervals and timeouts must be positive")

    @property
    def is_production(self) -> bool:
        return self.environment == 'production'

    @property
    def driver_timeout_ms(self) -> int:
        """Server-selection, socket and connect timeout in milliseconds."""
        return 120000 if self.is_production else 30000

    @property
    def database_name(self) -> str:
        """Explicit database name, else the URI path, else ``test``."""
        if self.database:
            return self.database
        if self.uri:
            path = urlsplit(self.uri).path.lstrip('/')
            if path:
                return path
        return DEFAULT_DATABASE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'DatabaseSettings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (tests)

        Returns:
            DatabaseSettings instance

        Raises:
            ConfigurationException: If a numeric value or read preference is invalid
        """
        environ = os.environ if environ is None else environ
        environment = _env(environ, 'APP_ENV', 'ENVIRONMENT', default='development').lower()
        production = environment == 'production'

        connect_policy = RetryPolicy(
            max_retries=_int(environ, 'MONGODB_CONNECT_MAX_RETRIES', 5),
            base_delay=_float(environ, 'MONGODB_CONNECT_BASE_DELAY', 1.0),
            max_delay=_float(environ, 'MONGODB_CONNECT_MAX_DELAY', 30.0),
        )
        operation_policy = RetryPolicy(
            max_retries=_int(environ, 'MONGODB_OPERATION_MAX_RETRIES', 3),
            base_delay=_float(environ, 'MONGODB_OPERATION_BASE_DELAY', 1.0),
            max_delay=_float(environ, 'MONGODB_OPERATION_MAX_DELAY', 10.0),
            operation_timeout=_float(environ, 'MONGODB_OPERATION_TIMEOUT', 30.0),
        )

        return cls(
            uri=_env(environ, 'MONGODB_URI', 'MONGO_URI'),
            database=_env(environ, 'MONGODB_DATABASE'),
            environment=environment,
            debug=_bool(environ, 'MONGODB_DEBUG'),
            read_preference=_env(environ, 'MONGODB_READ_PREFERENCE', default='primaryPreferred'),
            max_pool_size=_int(environ, 'MONGODB_MAX_POOL_SIZE', 15 if production else 10),
            min_pool_size=_int(environ, 'MONGODB_MIN_POOL_SIZE', 5),
            connect_policy=connect_policy,
            operation_policy=operation_policy,
            health_check_interval=_float(environ, 'MONGODB_HEALTH_CHECK_INTERVAL', 30.0),
            shutdown_timeout=_float(environ, 'MONGODB_SHUTDOWN_TIMEOUT', 30.0),
        )


__all__ = [
    'DatabaseSettings',
    'RetryPolicy',
    'READ_PREFERENCES',
    'VALID_ENVIRONMENTS',
]
