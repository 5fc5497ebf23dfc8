"""
Prometheus Metrics for the Data-Access Layer

Module-level prometheus_client collectors recording connection attempts, connection
state, operation attempts, retries and durations, and classified errors. Collectors
are registered once on import against the default registry.
"""

from prometheus_client import Counter, Gauge, Histogram


connection_attempts_total = Counter(
    'campus_db_connection_attempts_total',
    'Total MongoDB connection attempts',
    ['outcome']
)

connection_state = Gauge(
    'campus_db_connection_state',
    'MongoDB connection state (0=disconnected, 1=connected, 2=connecting, 3=disconnecting)'
)

operation_attempts_total = Counter(
    'campus_db_operation_attempts_total',
    'Total database operation attempts',
    ['operation', 'outcome']
)

operation_retries_total = Counter(
    'campus_db_operation_retries_total',
    'Total database operation retries',
    ['operation', 'error_type']
)

operation_duration_seconds = Histogram(
    'campus_db_operation_duration_seconds',
    'Database operation duration in seconds, retries included',
    ['operation'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

database_errors_total = Counter(
    'campus_db_errors_total',
    'Total data-access errors by type',
    ['error_type', 'retryable']
)


__all__ = [
    'connection_attempts_total',
    'connection_state',
    'operation_attempts_total',
    'operation_retries_total',
    'operation_duration_seconds',
    'database_errors_total',
]
