"""
Reconciliation of KafkaRestore resources

Restores are fire-once: a single Job per resource, never re-created, also
after that Job was removed; the recorded status.restore marks the run. A
resource carrying RestoreComplete=True is left alone until it is deleted.
Storage settings and credentials come from the referenced KafkaBackup.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from kafka_backup_operator import metrics
from kafka_backup_operator.conditions import (
    CONDITION_RESTORE_COMPLETE,
    REASON_RESTORE_COMPLETED,
    REASON_RESTORE_FAILED,
    REASON_RESTORE_RUNNING,
    STATUS_TRUE,
    conditions_from_status,
    is_condition_true,
    new_condition,
    not_ready,
    ready,
)
from kafka_backup_operator.config import get_config
from kafka_backup_operator.config_document import (
    build_restore_config,
    point_in_time_target,
    render,
    resolve_backup_id,
)
from kafka_backup_operator.errors import BackupNotFoundError, JobCreationError, KubernetesApiError, OperatorError
from kafka_backup_operator.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    BackupSpec,
    ResourceMeta,
    RestoreInfo,
    RestoreSpec,
    utcnow,
)
from kafka_backup_operator.reconcilers.common import (
    StatusUpdate,
    cleanup,
    ensure_finalizer,
    job_completion_time,
    job_name,
    job_outcome,
    job_result,
    job_start_time,
)
from kafka_backup_operator.resolvers import resolve_auth, resolve_cluster_ca, resolve_kafka_cluster
from kafka_backup_operator.templates import MODE_RESTORE, ManifestTemplates, config_map_name

logger = logging.getLogger(__name__)


def reconcile_restore(body: Mapping[str, Any], kube, now: Optional[datetime] = None) -> None:
    """
    Run one reconciliation pass for a KafkaRestore

    Raises:
        OperatorError: When the pass failed; the error is already on the status
    """
    config = get_config()
    plural = config.api.restore_plural
    meta = ResourceMeta.from_body(body)
    now = now or utcnow()

    if meta.being_deleted:
        cleanup(
            kube, plural, meta,
            selector=ManifestTemplates.selector(meta.name, MODE_RESTORE),
            owned=[('ConfigMap', config_map_name(meta.name, MODE_RESTORE))],
        )
        return

    if is_condition_true(conditions_from_status(body.get('status') or {}), CONDITION_RESTORE_COMPLETE):
        logger.debug("Restore %s/%s already completed, skipping", meta.namespace, meta.name)
        return

    status = StatusUpdate(body.get('status'))
    try:
        ensure_finalizer(kube, plural, meta)
        _reconcile(body, meta, status, kube, now)
    except OperatorError as e:
        logger.error("Reconciliation of KafkaRestore %s/%s failed: %s", meta.namespace, meta.name, e)
        status.record_error(e, now)
        try:
            status.flush(kube, plural, meta)
        except OperatorError as flush_error:
            logger.error("Failed to record error on %s/%s: %s", meta.namespace, meta.name, flush_error)
        raise

    status.succeeded(meta.generation, now)
    status.flush(kube, plural, meta)


def _source_backup(kube, spec: RestoreSpec, namespace: str) -> Dict[str, Any]:
    config = get_config()
    try:
        return kube.get_custom_object(config.api.backup_plural, namespace, spec.backup_ref.name)
    except KubernetesApiError as e:
        if e.not_found:
            raise BackupNotFoundError(spec.backup_ref.name) from e
        raise


def _reconcile(body: Mapping[str, Any], meta: ResourceMeta, status: StatusUpdate, kube, now: datetime) -> None:
    config = get_config()
    spec = RestoreSpec.from_dict(body.get('spec') or {})

    source = _source_backup(kube, spec, meta.namespace)
    source_spec = BackupSpec.from_dict(source.get('spec') or {})

    cluster = resolve_kafka_cluster(kube, spec.cluster_ref, meta.namespace)

    ca_optional = False
    try:
        resolve_cluster_ca(kube, cluster)
    except OperatorError as e:
        logger.warning("Cluster CA of restore target %s not available: %s", cluster.name, e)
        ca_optional = True

    auth = resolve_auth(kube, spec.authentication, meta.namespace)

    backup_id = resolve_backup_id(spec, source)
    target_time = point_in_time_target(spec)

    document = build_restore_config(spec, source_spec, backup_id, cluster, auth)
    kube.apply(ManifestTemplates.config_map_manifest(
        meta, config.api.restore_kind, MODE_RESTORE, cluster.name, render(document),
    ))

    jobs = kube.list_jobs(meta.namespace, ManifestTemplates.selector(meta.name, MODE_RESTORE))
    recorded = status.fields.get('restore')
    if not jobs and recorded:
        _job_gone(meta, status, recorded, backup_id, now)
        return
    if not jobs:
        name = job_name(meta.name, now)
        manifest = ManifestTemplates.restore_job_manifest(name, meta, spec, source_spec, cluster, auth, ca_optional)
        try:
            kube.create_job(manifest)
        except KubernetesApiError as e:
            raise JobCreationError(f"{name}: {e}") from e
        logger.info("Created restore job %s for %s/%s (backup %s)", name, meta.namespace, meta.name, backup_id)
        status.fields['restore'] = RestoreInfo(
            status=STATUS_RUNNING, start_time=now, point_in_time_target=target_time,
        ).to_dict()
        status.set(not_ready(REASON_RESTORE_RUNNING, f"Restore job {name} is running", now))
        return

    job = max(jobs, key=lambda j: job_start_time(j, now))
    name = job['metadata']['name']
    outcome = job_outcome(job)
    start = job_start_time(job, now)

    if outcome is None:
        status.fields['restore'] = RestoreInfo(
            status=STATUS_RUNNING, start_time=start, point_in_time_target=target_time,
        ).to_dict()
        status.set(not_ready(REASON_RESTORE_RUNNING, f"Restore job {name} is running", now))
        return

    completion = job_completion_time(job, now)
    status.fields['restore'] = RestoreInfo(
        status=outcome, start_time=start, completion_time=completion, point_in_time_target=target_time,
    ).to_dict()

    if outcome == STATUS_COMPLETED:
        logger.info("Restore job %s of %s/%s completed", name, meta.namespace, meta.name)
        message = f"Restore from backup {backup_id} completed successfully"
        status.set(ready(REASON_RESTORE_COMPLETED, message, now))
        status.set(new_condition(CONDITION_RESTORE_COMPLETE, STATUS_TRUE, REASON_RESTORE_COMPLETED, message, now))
        records, size_bytes = job_result(job)
        metrics.record_restore_completion(meta.name, cluster.name, start, completion, size_bytes, records)
    else:
        logger.error("Restore job %s of %s/%s failed", name, meta.namespace, meta.name)
        status.record_failure(REASON_RESTORE_FAILED, f"Restore job {name} failed", now)


def _job_gone(meta: ResourceMeta, status: StatusUpdate, recorded: Dict[str, Any], backup_id: str, now: datetime) -> None:
    """
    The restore already ran but its Job no longer exists

    A restore is never run twice, so the recorded summary is kept. A summary
    still marked Running can no longer learn its outcome and becomes Failed.
    """
    if recorded.get('status') == STATUS_COMPLETED:
        message = f"Restore from backup {backup_id} completed successfully"
        status.set(ready(REASON_RESTORE_COMPLETED, message, now))
        status.set(new_condition(CONDITION_RESTORE_COMPLETE, STATUS_TRUE, REASON_RESTORE_COMPLETED, message, now))
        return

    if recorded.get('status') != STATUS_FAILED:
        logger.error("Restore job of %s/%s disappeared before reporting a result", meta.namespace, meta.name)
        status.fields['restore'] = dict(recorded, status=STATUS_FAILED)
    status.record_failure(REASON_RESTORE_FAILED, "Restore job no longer exists; the restore is not re-run", now)
