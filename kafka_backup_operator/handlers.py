import asyncio
import copy
import logging
import threading
import time

import kopf
import kubernetes

from kafka_backup_operator import metrics
from kafka_backup_operator.config import get_config
from kafka_backup_operator.errors import OperatorError
from kafka_backup_operator.kube import KubeClient
from kafka_backup_operator.reconcilers import reconcile_backup, reconcile_restore

CONFIG = get_config()
API = CONFIG.api

# Seconds the cleanup waits for running passes
DRAIN_TIMEOUT = 60.0

# Passes in progress across all resources
_in_flight = 0
_idle = threading.Condition()


def _load_kube_config() -> None:
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, logger, **_):
    """
    Configure operator on startup
    """
    config = get_config()

    logging.getLogger('kafka_backup_operator').setLevel(config.log_level)
    settings.posting.level = getattr(logging, config.log_level, logging.INFO)
    # Keep kopf's handler progress out of the status we own
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()

    _load_kube_config()
    memo.kube = KubeClient(config)

    if config.enable_metrics:
        metrics.start_metrics_server(config.metrics_port)

    logger.info(f"Starting {config.name} v{config.version}")
    logger.info(f"Watching namespace: {config.namespace or 'all namespaces'}")
    logger.info(f"Default backup image: {config.job.default_image}")


def _watched(namespace, **_) -> bool:
    watched = get_config().namespace
    return not watched or namespace == watched


def _enter() -> None:
    global _in_flight
    with _idle:
        _in_flight += 1


def _leave() -> None:
    global _in_flight
    with _idle:
        _in_flight -= 1
        _idle.notify_all()


def _wait_for_passes(timeout: float) -> bool:
    with _idle:
        return _idle.wait_for(lambda: _in_flight == 0, timeout=timeout)


def _run(kind: str, reconcile, body, memo: kopf.Memo, logger) -> None:
    """
    Run one reconciliation pass, one at a time per resource

    Change handlers and the requeue timer of a resource share its memo, and
    with it the lock. Operator errors are retried after retry_after.
    """
    config = get_config()
    snapshot = copy.deepcopy(dict(body))
    lock = memo.setdefault('reconcile_lock', threading.Lock())

    with lock:
        _enter()
        started = time.monotonic()
        try:
            reconcile(snapshot, memo.kube)
        except OperatorError as e:
            metrics.record_reconcile(kind, False, time.monotonic() - started)
            logger.error(f"{kind} reconciliation failed ({e.reason}), retrying in {config.retry_after}s: {e}")
            raise kopf.TemporaryError(str(e), delay=config.retry_after) from e
        except Exception:
            metrics.record_reconcile(kind, False, time.monotonic() - started)
            raise
        finally:
            _leave()
        metrics.record_reconcile(kind, True, time.monotonic() - started)


@kopf.on.resume(API.group, API.version, API.backup_plural, when=_watched)
@kopf.on.create(API.group, API.version, API.backup_plural, when=_watched)
@kopf.on.update(API.group, API.version, API.backup_plural, when=_watched)
def reconcile_kafka_backup(body, memo: kopf.Memo, logger, **kwargs):
    """
    Handler called when a KafkaBackup is created, changed or found at startup
    """
    _run(API.backup_kind, reconcile_backup, body, memo, logger)


@kopf.timer(API.group, API.version, API.backup_plural,
            interval=CONFIG.requeue_after, backoff=CONFIG.retry_after, when=_watched)
def requeue_kafka_backup(body, memo: kopf.Memo, logger, **kwargs):
    """
    Periodic pass that picks up Job progress and schedule changes
    """
    _run(API.backup_kind, reconcile_backup, body, memo, logger)


@kopf.on.delete(API.group, API.version, API.backup_plural, optional=True, when=_watched)
def delete_kafka_backup(body, memo: kopf.Memo, logger, **kwargs):
    """
    Clean up owned objects and release the finalizer of a deleted KafkaBackup
    """
    _run(API.backup_kind, reconcile_backup, body, memo, logger)


@kopf.on.resume(API.group, API.version, API.restore_plural, when=_watched)
@kopf.on.create(API.group, API.version, API.restore_plural, when=_watched)
@kopf.on.update(API.group, API.version, API.restore_plural, when=_watched)
def reconcile_kafka_restore(body, memo: kopf.Memo, logger, **kwargs):
    """
    Handler called when a KafkaRestore is created, changed or found at startup
    """
    _run(API.restore_kind, reconcile_restore, body, memo, logger)


@kopf.timer(API.group, API.version, API.restore_plural,
            interval=CONFIG.requeue_after, backoff=CONFIG.retry_after, when=_watched)
def requeue_kafka_restore(body, memo: kopf.Memo, logger, **kwargs):
    _run(API.restore_kind, reconcile_restore, body, memo, logger)


@kopf.on.delete(API.group, API.version, API.restore_plural, optional=True, when=_watched)
def delete_kafka_restore(body, memo: kopf.Memo, logger, **kwargs):
    _run(API.restore_kind, reconcile_restore, body, memo, logger)


@kopf.on.cleanup()
async def drain(logger, **kwargs):
    """
    Let in-flight reconciliations finish before the operator exits
    """
    logger.info("Waiting for running reconciliations to finish")
    if not await asyncio.to_thread(_wait_for_passes, DRAIN_TIMEOUT):
        logger.warning(f"Reconciliations still running after {DRAIN_TIMEOUT}s, exiting anyway")


@kopf.on.probe(id='version')
def version_probe(**kwargs):
    return get_config().version
