"""
Reconciliation of KafkaBackup resources

One pass, in order: cleanup on deletion, finalizer, cluster/CA/auth
resolution, configuration ConfigMap, CronJob for schedules, one-shot Job
for unscheduled or triggered runs, completion detection into history, then
retention. The first failing step ends the pass with Ready=False and
Error=True; status is written once at the end.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from kafka_backup_operator import metrics
from kafka_backup_operator.conditions import (
    CONDITION_BACKUP_COMPLETE,
    CONDITION_SCHEDULED,
    REASON_BACKUP_COMPLETED,
    REASON_BACKUP_FAILED,
    REASON_BACKUP_RUNNING,
    REASON_BACKUP_SCHEDULED,
    REASON_RECONCILED,
    REASON_SCHEDULE_SUSPENDED,
    STATUS_FALSE,
    STATUS_TRUE,
    Condition,
    new_condition,
    not_ready,
    ready,
)
from kafka_backup_operator.config import get_config
from kafka_backup_operator.config_document import build_backup_config, render
from kafka_backup_operator.errors import JobCreationError, KubernetesApiError, OperatorError
from kafka_backup_operator.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    BackupHistoryEntry,
    BackupSpec,
    ResourceMeta,
    history_from_status,
    parse_time,
    utcnow,
)
from kafka_backup_operator.reconcilers.common import (
    StatusUpdate,
    cleanup,
    ensure_finalizer,
    job_completion_time,
    job_is_active,
    job_name,
    job_outcome,
    job_result,
    job_start_time,
)
from kafka_backup_operator.resolvers import resolve_auth, resolve_cluster_ca, resolve_kafka_cluster
from kafka_backup_operator.retention import evaluate_retention
from kafka_backup_operator.templates import MODE_BACKUP, ManifestTemplates, config_map_name, cronjob_name

logger = logging.getLogger(__name__)


def reconcile_backup(body: Mapping[str, Any], kube, now: Optional[datetime] = None) -> None:
    """
    Run one reconciliation pass for a KafkaBackup

    Args:
        body: Snapshot of the resource as read from the API server
        kube: KubeClient (or an object with the same methods)
        now: Reference time of the pass

    Raises:
        OperatorError: When the pass failed; the error is already on the status
    """
    config = get_config()
    plural = config.api.backup_plural
    meta = ResourceMeta.from_body(body)
    now = now or utcnow()

    if meta.being_deleted:
        cleanup(
            kube, plural, meta,
            selector=ManifestTemplates.selector(meta.name, MODE_BACKUP),
            owned=[('CronJob', cronjob_name(meta.name)), ('ConfigMap', config_map_name(meta.name, MODE_BACKUP))],
        )
        return

    status = StatusUpdate(body.get('status'))
    try:
        ensure_finalizer(kube, plural, meta)
        _reconcile(body, meta, status, kube, now)
    except OperatorError as e:
        logger.error("Reconciliation of KafkaBackup %s/%s failed: %s", meta.namespace, meta.name, e)
        status.record_error(e, now)
        try:
            status.flush(kube, plural, meta)
        except OperatorError as flush_error:
            logger.error("Failed to record error on %s/%s: %s", meta.namespace, meta.name, flush_error)
        raise

    status.succeeded(meta.generation, now)
    status.flush(kube, plural, meta)


def _reconcile(body: Mapping[str, Any], meta: ResourceMeta, status: StatusUpdate, kube, now: datetime) -> None:
    config = get_config()
    spec = BackupSpec.from_dict(body.get('spec') or {})

    cluster = resolve_kafka_cluster(kube, spec.cluster_ref, meta.namespace)

    ca_optional = False
    try:
        resolve_cluster_ca(kube, cluster)
    except OperatorError as e:
        logger.warning("Cluster CA of %s not available (may not be required): %s", cluster.name, e)
        ca_optional = True

    auth = resolve_auth(kube, spec.authentication, meta.namespace)

    document = build_backup_config(meta.name, spec, cluster, auth)
    kube.apply(ManifestTemplates.config_map_manifest(
        meta, config.api.backup_kind, MODE_BACKUP, cluster.name, render(document),
    ))

    # Scheduled path
    if spec.schedule is not None:
        kube.apply(ManifestTemplates.cronjob_manifest(meta, spec, cluster, auth, ca_optional))
        if spec.schedule.suspend:
            status.fields.pop('nextScheduledBackup', None)
            status.set(new_condition(
                CONDITION_SCHEDULED, STATUS_FALSE, REASON_SCHEDULE_SUSPENDED,
                f"Schedule {spec.schedule.cron} is suspended", now,
            ))
        else:
            status.fields['nextScheduledBackup'] = spec.schedule.cron
            status.set(new_condition(
                CONDITION_SCHEDULED, STATUS_TRUE, REASON_BACKUP_SCHEDULED,
                f"Backups run on schedule {spec.schedule.cron}", now,
            ))
            logger.info("CronJob for %s/%s runs on %s", meta.namespace, meta.name, spec.schedule.cron)
    else:
        if kube.delete('CronJob', meta.namespace, cronjob_name(meta.name)):
            logger.info("Deleted CronJob of %s/%s after its schedule was removed", meta.namespace, meta.name)
        status.fields.pop('nextScheduledBackup', None)

    jobs = kube.list_jobs(meta.namespace, ManifestTemplates.selector(meta.name, MODE_BACKUP))

    # One-shot path
    created = _run_one_shot(meta, spec, status, kube, jobs, cluster, auth, ca_optional, now)

    # Completion detection
    history = history_from_status(status.fields)
    _record_completions(meta, status, history, jobs, cluster.name, now)

    if spec.retention is not None and spec.retention.prune_on_schedule:
        pruned = evaluate_retention(history, spec.retention, now)
        if pruned:
            history = _drop_entries(kube, meta, history, pruned)

    if len(history) > config.max_history_entries:
        newest_first = sorted(history, key=lambda entry: entry.start_time, reverse=True)
        overflow = {entry.id for entry in newest_first[config.max_history_entries:]}
        history = _drop_entries(kube, meta, history, overflow)

    if history:
        status.fields['backupHistory'] = [entry.to_dict() for entry in history]
    else:
        status.fields.pop('backupHistory', None)

    active = sorted(job['metadata']['name'] for job in jobs if job_is_active(job))
    running = created or (active[-1] if active else None)
    readiness = _readiness(spec, running, history, now)
    if readiness.reason == REASON_BACKUP_FAILED:
        # The Error condition follows the latest run until a newer one succeeds
        status.record_failure(readiness.reason, readiness.message, now)
    else:
        status.set(readiness)

    last = status.fields.get('lastBackup')
    if last and last.get('completionTime'):
        metrics.update_backup_lag(meta.name, cluster.name, parse_time(last['completionTime']), now)


def _run_one_shot(
    meta, spec: BackupSpec, status: StatusUpdate, kube, jobs, cluster, auth, ca_optional, now,
) -> Optional[str]:
    """
    Create a Job when unscheduled and this generation has not run, or when triggered

    An active Job always prevents a second one. The trigger annotation is
    removed once acted on, also when an active Job made creation unnecessary.

    Returns:
        str: Name of the created Job, if any
    """
    config = get_config()
    triggered = meta.annotations.get(config.trigger_annotation) == config.trigger_value

    generation_label = config.label('generation')
    generation_ran = any(
        (job['metadata'].get('labels') or {}).get(generation_label) == str(meta.generation)
        for job in jobs
    )
    run_once = (
        spec.schedule is None
        and status.fields.get('observedGeneration') != meta.generation
        and not generation_ran
    )
    if not (triggered or run_once):
        return None

    created = None
    active = [job for job in jobs if job_is_active(job)]
    if active:
        logger.debug(
            "Backup job %s of %s/%s is still active, not creating another",
            active[0]['metadata']['name'], meta.namespace, meta.name,
        )
    else:
        name = job_name(meta.name, now)
        manifest = ManifestTemplates.backup_job_manifest(name, meta, spec, cluster, auth, ca_optional)
        try:
            kube.create_job(manifest)
        except KubernetesApiError as e:
            raise JobCreationError(f"{name}: {e}") from e
        logger.info("Created backup job %s for %s/%s", name, meta.namespace, meta.name)
        created = name

    if triggered:
        kube.patch_metadata(
            config.api.backup_plural, meta.namespace, meta.name,
            {'annotations': {config.trigger_annotation: None}},
        )
        logger.info("Cleared trigger annotation on %s/%s", meta.namespace, meta.name)
    return created


def _record_completions(
    meta: ResourceMeta,
    status: StatusUpdate,
    history: List[BackupHistoryEntry],
    jobs: List[Dict[str, Any]],
    cluster_name: str,
    now: datetime,
) -> None:
    """
    Append finished Jobs to the history

    A Job whose name is already a history id has been recorded by an
    earlier pass and is skipped.
    """
    recorded = {entry.id for entry in history}
    finished = []
    for job in jobs:
        name = job['metadata']['name']
        if name in recorded or (job['metadata'].get('deletionTimestamp')):
            continue
        outcome = job_outcome(job)
        if outcome is not None:
            finished.append((job_start_time(job, now), name, outcome, job))

    for start, name, outcome, job in sorted(finished, key=lambda item: item[0]):
        completion = job_completion_time(job, now)
        records, size_bytes = job_result(job)
        entry = BackupHistoryEntry(
            id=name, status=outcome, start_time=start, completion_time=completion, size_bytes=size_bytes,
        )
        history.append(entry)

        if outcome == STATUS_COMPLETED:
            logger.info("Backup job %s of %s/%s completed", name, meta.namespace, meta.name)
            status.fields['lastBackup'] = entry.to_last_backup()
            status.set(new_condition(
                CONDITION_BACKUP_COMPLETE, STATUS_TRUE, REASON_BACKUP_COMPLETED,
                f"Backup {name} completed successfully", now,
            ))
            metrics.record_backup_success(meta.name, cluster_name, start, completion, size_bytes, records)
        else:
            logger.error("Backup job %s of %s/%s failed", name, meta.namespace, meta.name)
            status.record_failure(REASON_BACKUP_FAILED, f"Backup job {name} failed", now)
            metrics.record_backup_failure(meta.name, cluster_name, completion)


def _drop_entries(kube, meta: ResourceMeta, history: List[BackupHistoryEntry], ids) -> List[BackupHistoryEntry]:
    """Remove entries from the history and delete their Jobs"""
    for backup_id in sorted(ids):
        logger.info("Pruning backup %s of %s/%s", backup_id, meta.namespace, meta.name)
        kube.delete('Job', meta.namespace, backup_id)
    return [entry for entry in history if entry.id not in ids]


def _readiness(
    spec: BackupSpec,
    running: Optional[str],
    history: List[BackupHistoryEntry],
    now: datetime,
) -> Condition:
    """
    Ready condition derived from what this pass observed

    Evaluated on every successful pass so that an earlier error is replaced
    once the resource is healthy again.
    """
    schedule = spec.schedule
    if schedule is not None and schedule.suspend:
        return ready(REASON_SCHEDULE_SUSPENDED, f"Schedule {schedule.cron} is suspended", now)
    if running is not None:
        return not_ready(REASON_BACKUP_RUNNING, f"Backup job {running} is running", now)

    latest = max(history, key=lambda entry: entry.start_time, default=None)
    if latest is not None and latest.status == STATUS_FAILED:
        return not_ready(REASON_BACKUP_FAILED, f"Backup job {latest.id} failed", now)
    if schedule is not None:
        return ready(REASON_BACKUP_SCHEDULED, f"Next backup scheduled: {schedule.cron}", now)
    if latest is not None:
        return ready(REASON_BACKUP_COMPLETED, f"Backup {latest.id} completed successfully", now)
    return ready(REASON_RECONCILED, "Backup configuration applied", now)
