"""
Structured Logging for the Data-Access Layer using structlog

This module configures structlog on top of the standard library logging module and
provides the logger collaborator used by the connection manager and the operation
executor. Every log entry is a structured event; connection strings are masked before
they reach any handler.

Key Features:
- structlog processor chain with ISO timestamps, log level and logger name enrichment
- JSON rendering for production log aggregation, console rendering for development
- Credential masking for MongoDB connection URIs (``user:pass@`` -> ``***:***@``)
- ``DatabaseLogger`` collaborator with connection lifecycle helpers
  (``connection.success``, ``connection.error``, ``connection.closed``)
"""

import logging
import logging.config
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog


# Matches the user-info portion of a connection URI up to the last ``@`` before the
# host list, so an unescaped ``@`` inside the password is masked as well
_CREDENTIALS_PATTERN = re.compile(r"//[^\s/?#]+@")
_MASKED_CREDENTIALS = "//***:***@"


class LoggingConfig:
    """Environment-driven logging configuration."""

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
    LOG_FORMAT = os.getenv('LOG_FORMAT', '')  # json, console; empty selects by environment
    APPLICATION_NAME = os.getenv('APPLICATION_NAME', 'campus-db')


def mask_uri(uri: Optional[str]) -> str:
    """
    Replace the credentials of a connection URI with ``***:***``.

    Args:
        uri: Connection URI, possibly containing ``user:password@``

    Returns:
        The masked URI, or ``"undefined"`` when no URI is configured
    """
    if not uri:
        return "undefined"
    return _CREDENTIALS_PATTERN.sub(_MASKED_CREDENTIALS, uri)


def mask_credentials(logger, method_name, event_dict):
    """structlog processor masking connection credentials in every string value."""
    for key, value in event_dict.items():
        if isinstance(value, str) and '@' in value:
            event_dict[key] = mask_uri(value)
    return event_dict


def setup_structured_logging(environment: Optional[str] = None,
                             debug: bool = False) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the standard library root logger.

    Args:
        environment: Deployment environment; production renders JSON
        debug: Force DEBUG level regardless of ``LOG_LEVEL``

    Returns:
        Configured application logger
    """
    environment = environment or os.getenv('APP_ENV', 'development')
    log_format = LoggingConfig.LOG_FORMAT or ('json' if environment == 'production' else 'console')
    log_level = 'DEBUG' if debug or environment == 'development' else LoggingConfig.LOG_LEVEL

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == 'json':
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'plain': {'format': '%(message)s'},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {'handlers': ['console'], 'level': log_level, 'propagate': False},
            # driver internals are noisy below WARNING
            'pymongo': {'level': 'WARNING'},
        },
    })

    logger = structlog.get_logger(LoggingConfig.APPLICATION_NAME)
    logger.info(
        "Structured logging initialized",
        log_level=log_level,
        log_format=log_format,
        environment=environment,
    )
    return logger


def _error_fields(error: Optional[BaseException]) -> Dict[str, Any]:
    if error is None:
        return {}
    return {
        'error': mask_uri(str(error)) if str(error) else type(error).__name__,
        'error_type': type(error).__name__,
    }


class ConnectionEventLogger:
    """Connection lifecycle helpers shared by every backing service."""

    def __init__(self, logger: structlog.stdlib.BoundLogger):
        self._logger = logger

    def success(self, service: str, **details: Any) -> None:
        name = service.upper()
        self._logger.info(
            f"{name} connection established",
            component=name,
            status="connected",
            timestamp=datetime.now(timezone.utc).isoformat(),
            **details
        )

    def closed(self, service: str, **details: Any) -> None:
        name = service.upper()
        self._logger.warning(
            f"{name} connection closed",
            component=name,
            status="disconnected",
            timestamp=datetime.now(timezone.utc).isoformat(),
            **details
        )

    def error(self, service: str, error: Optional[BaseException], **details: Any) -> None:
        name = service.upper()
        self._logger.error(
            f"{name} connection error",
            component=name,
            status="error",
            timestamp=datetime.now(timezone.utc).isoformat(),
            **_error_fields(error),
            **details
        )


class DatabaseLogger:
    """
    Logger collaborator for the data-access layer.

    Wraps a structlog logger with the calling convention the connection manager and
    operation executor rely on: ``info/warning/error(message, **meta)`` plus the
    ``connection`` helpers. Callers pass connection strings through ``mask_uri``.
    """

    def __init__(self, name: Optional[str] = None,
                 logger: Optional[structlog.stdlib.BoundLogger] = None):
        self._logger = logger or structlog.get_logger(name or LoggingConfig.APPLICATION_NAME)
        self.connection = ConnectionEventLogger(self._logger)

    def bind(self, **context: Any) -> 'DatabaseLogger':
        return DatabaseLogger(logger=self._logger.bind(**context))

    def debug(self, message: str, **meta: Any) -> None:
        self._logger.debug(message, **meta)

    def info(self, message: str, **meta: Any) -> None:
        self._logger.info(message, **meta)

    def warning(self, message: str, **meta: Any) -> None:
        self._logger.warning(message, **meta)

    warn = warning

    def error(self, message: str, error: Optional[BaseException] = None, **meta: Any) -> None:
        self._logger.error(message, **_error_fields(error), **meta)

    def critical(self, message: str, error: Optional[BaseException] = None, **meta: Any) -> None:
        self._logger.critical(message, **_error_fields(error), **meta)


def get_logger(name: Optional[str] = None) -> DatabaseLogger:
    """
    Get a data-access logger.

    Args:
        name: Logger name, defaults to the application name

    Returns:
        DatabaseLogger instance
    """
    return DatabaseLogger(name)


__all__ = [
    'LoggingConfig',
    'ConnectionEventLogger',
    'DatabaseLogger',
    'get_logger',
    'mask_credentials',
    'mask_uri',
    'setup_structured_logging',
]
