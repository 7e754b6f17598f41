"""
Prometheus metrics exported by the operator
"""

import logging
from datetime import datetime
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

DURATION_BUCKETS = (10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0)

BACKUP_RECORDS = Counter(
    'kafka_backup_records_total',
    'Total number of records backed up',
    ['backup_name', 'cluster'],
)
BACKUP_BYTES = Counter(
    'kafka_backup_bytes_total',
    'Total number of bytes backed up',
    ['backup_name', 'cluster'],
)
BACKUP_DURATION = Histogram(
    'kafka_backup_duration_seconds',
    'Duration of backup runs in seconds',
    ['backup_name', 'cluster'],
    buckets=DURATION_BUCKETS,
)
BACKUP_LAST_SUCCESS = Gauge(
    'kafka_backup_last_success_timestamp',
    'Unix time of the last successful backup',
    ['backup_name', 'cluster'],
)
BACKUP_LAST_FAILURE = Gauge(
    'kafka_backup_last_failure_timestamp',
    'Unix time of the last failed backup',
    ['backup_name', 'cluster'],
)
BACKUP_LAG = Gauge(
    'kafka_backup_lag_seconds',
    'Seconds since the last successful backup completed',
    ['backup_name', 'cluster'],
)

RESTORE_RECORDS = Counter(
    'kafka_restore_records_total',
    'Total number of records restored',
    ['restore_name', 'cluster'],
)
RESTORE_BYTES = Counter(
    'kafka_restore_bytes_total',
    'Total number of bytes restored',
    ['restore_name', 'cluster'],
)
RESTORE_DURATION = Histogram(
    'kafka_restore_duration_seconds',
    'Duration of restore runs in seconds',
    ['restore_name', 'cluster'],
    buckets=DURATION_BUCKETS,
)

RECONCILE_TOTAL = Counter(
    'kafka_backup_operator_reconcile_total',
    'Reconciliation passes by resource kind and result',
    ['kind', 'result'],
)
RECONCILE_DURATION = Histogram(
    'kafka_backup_operator_reconcile_duration_seconds',
    'Duration of reconciliation passes in seconds',
    ['kind'],
)


def start_metrics_server(port: int) -> None:
    start_http_server(port)
    logger.info("Serving Prometheus metrics on port %d", port)


def _duration(start: datetime, end: Optional[datetime]) -> Optional[float]:
    if end is None:
        return None
    return max((end - start).total_seconds(), 0.0)


def record_backup_success(
    backup_name: str,
    cluster: str,
    start: datetime,
    completion: Optional[datetime],
    size_bytes: Optional[int] = None,
    records: Optional[int] = None,
) -> None:
    if (duration := _duration(start, completion)) is not None:
        BACKUP_DURATION.labels(backup_name, cluster).observe(duration)
    if size_bytes:
        BACKUP_BYTES.labels(backup_name, cluster).inc(size_bytes)
    if records:
        BACKUP_RECORDS.labels(backup_name, cluster).inc(records)
    BACKUP_LAST_SUCCESS.labels(backup_name, cluster).set((completion or start).timestamp())


def record_backup_failure(backup_name: str, cluster: str, when: datetime) -> None:
    BACKUP_LAST_FAILURE.labels(backup_name, cluster).set(when.timestamp())


def update_backup_lag(backup_name: str, cluster: str, last_success: Optional[datetime], now: datetime) -> None:
    if last_success is None:
        return
    BACKUP_LAG.labels(backup_name, cluster).set(max((now - last_success).total_seconds(), 0.0))


def record_restore_completion(
    restore_name: str,
    cluster: str,
    start: datetime,
    completion: Optional[datetime],
    size_bytes: Optional[int] = None,
    records: Optional[int] = None,
) -> None:
    if (duration := _duration(start, completion)) is not None:
        RESTORE_DURATION.labels(restore_name, cluster).observe(duration)
    if size_bytes:
        RESTORE_BYTES.labels(restore_name, cluster).inc(size_bytes)
    if records:
        RESTORE_RECORDS.labels(restore_name, cluster).inc(records)


def record_reconcile(kind: str, success: bool, duration: float) -> None:
    RECONCILE_TOTAL.labels(kind, 'success' if success else 'error').inc()
    RECONCILE_DURATION.labels(kind).observe(duration)
