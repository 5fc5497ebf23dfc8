"""
Monitoring package: structured logging and Prometheus metrics for the data layer.
"""

from campus_db.monitoring.logging import (
    DatabaseLogger,
    get_logger,
    mask_credentials,
    mask_uri,
    setup_structured_logging,
)

__all__ = [
    'DatabaseLogger',
    'get_logger',
    'mask_credentials',
    'mask_uri',
    'setup_structured_logging',
]
