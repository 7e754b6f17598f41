"""
Building blocks shared by the backup and restore reconcilers
"""

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from kafka_backup_operator.conditions import (
    CONDITION_ERROR,
    Condition,
    clear_error,
    conditions_from_status,
    conditions_to_status,
    error_conditions,
    find_condition,
    set_condition,
)
from kafka_backup_operator.config import get_config
from kafka_backup_operator.errors import FinalizerError, KubernetesApiError, OperatorError
from kafka_backup_operator.models import STATUS_COMPLETED, STATUS_FAILED, ResourceMeta, parse_time, utcnow

logger = logging.getLogger(__name__)


class StatusUpdate:
    """
    Status of one resource, accumulated during a pass and written once

    ``flush`` compares against what was read and skips the API call when
    nothing changed. Keys that disappeared are sent as null so the merge
    patch removes them.
    """

    def __init__(self, status: Optional[Mapping[str, Any]]):
        self._original = copy.deepcopy(dict(status or {}))
        self.fields: Dict[str, Any] = copy.deepcopy(self._original)
        self.fields.pop('conditions', None)
        self.conditions: List[Condition] = conditions_from_status(self._original)
        self.failure_recorded = False

    def set(self, condition: Condition) -> None:
        set_condition(self.conditions, condition)

    def record_error(self, error: OperatorError, now: Optional[datetime] = None) -> None:
        for condition in error_conditions(error.reason, str(error), now):
            self.set(condition)

    def record_failure(self, reason: str, message: str, now: Optional[datetime] = None) -> None:
        """An explicit Job failure; the Error condition stays set for this pass"""
        self.failure_recorded = True
        for condition in error_conditions(reason, message, now):
            self.set(condition)

    def succeeded(self, generation: int, now: Optional[datetime] = None) -> None:
        """Mark the pass as fully reconciled"""
        if not self.failure_recorded and find_condition(self.conditions, CONDITION_ERROR) is not None:
            self.set(clear_error(now))
        self.fields['observedGeneration'] = generation

    def render(self) -> Dict[str, Any]:
        rendered = dict(self.fields)
        if self.conditions:
            rendered['conditions'] = conditions_to_status(self.conditions)
        return rendered

    @property
    def changed(self) -> bool:
        return self.render() != self._original

    def flush(self, kube, plural: str, meta: ResourceMeta) -> bool:
        if not self.changed:
            logger.debug("Status of %s/%s unchanged", meta.namespace, meta.name)
            return False
        rendered = self.render()
        patch: Dict[str, Any] = {key: None for key in self._original if key not in rendered}
        patch.update(rendered)
        kube.patch_status(plural, meta.namespace, meta.name, patch)
        self._original = copy.deepcopy(rendered)
        return True


# --- Finalizer and metadata ---

def ensure_finalizer(kube, plural: str, meta: ResourceMeta) -> bool:
    """
    Add the operator finalizer; the patch carries the read resourceVersion

    Returns:
        bool: True when the finalizer had to be added
    """
    config = get_config()
    if config.finalizer in meta.finalizers:
        return False
    metadata: Dict[str, Any] = {'finalizers': list(meta.finalizers) + [config.finalizer]}
    if meta.resource_version:
        metadata['resourceVersion'] = meta.resource_version
    try:
        kube.patch_metadata(plural, meta.namespace, meta.name, metadata)
    except KubernetesApiError as e:
        raise FinalizerError(f"Failed to add finalizer to {meta.namespace}/{meta.name}: {e}") from e
    logger.info("Added finalizer to %s/%s", meta.namespace, meta.name)
    return True


def remove_finalizer(kube, plural: str, meta: ResourceMeta) -> None:
    config = get_config()
    metadata: Dict[str, Any] = {'finalizers': [f for f in meta.finalizers if f != config.finalizer]}
    if meta.resource_version:
        metadata['resourceVersion'] = meta.resource_version
    try:
        kube.patch_metadata(plural, meta.namespace, meta.name, metadata)
    except KubernetesApiError as e:
        if e.not_found:
            return
        raise FinalizerError(f"Failed to remove finalizer from {meta.namespace}/{meta.name}: {e}") from e
    logger.info("Removed finalizer from %s/%s", meta.namespace, meta.name)


def cleanup(kube, plural: str, meta: ResourceMeta, selector: Mapping[str, str], owned: List[Tuple[str, str]]) -> None:
    """
    Delete owned objects, then release the finalizer

    Every deletion tolerates absent objects, so an interrupted cleanup is
    safe to run again.
    """
    config = get_config()
    if config.finalizer not in meta.finalizers:
        logger.debug("%s/%s has no finalizer of ours, nothing to clean up", meta.namespace, meta.name)
        return

    logger.info("Cleaning up resources of %s/%s", meta.namespace, meta.name)
    for job in kube.list_jobs(meta.namespace, selector):
        kube.delete('Job', meta.namespace, job['metadata']['name'])
    for kind, name in owned:
        kube.delete(kind, meta.namespace, name)

    remove_finalizer(kube, plural, meta)
    logger.info("Cleanup of %s/%s complete", meta.namespace, meta.name)


# --- Jobs ---

def job_name(cr_name: str, now: datetime) -> str:
    return f"{cr_name}-{now.strftime('%Y%m%d-%H%M%S')}"


def job_outcome(job: Mapping[str, Any]) -> Optional[str]:
    """
    Terminal state of a Job, or None while it may still run

    The Complete/Failed conditions are authoritative; a positive succeeded
    count covers API servers that have not set them yet.
    """
    status = job.get('status') or {}
    for condition in status.get('conditions') or []:
        if condition.get('status') != 'True':
            continue
        if condition.get('type') == 'Complete':
            return STATUS_COMPLETED
        if condition.get('type') == 'Failed':
            return STATUS_FAILED
    if (status.get('succeeded') or 0) > 0:
        return STATUS_COMPLETED
    return None


def job_is_active(job: Mapping[str, Any]) -> bool:
    """Jobs without a terminal outcome count as active, including brand new ones"""
    if (job.get('metadata') or {}).get('deletionTimestamp'):
        return False
    return job_outcome(job) is None


def _job_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return parse_time(value)


def job_start_time(job: Mapping[str, Any], default: Optional[datetime] = None) -> datetime:
    status = job.get('status') or {}
    metadata = job.get('metadata') or {}
    return (
        _job_time(status.get('startTime'))
        or _job_time(metadata.get('creationTimestamp'))
        or default
        or utcnow()
    )


def job_completion_time(job: Mapping[str, Any], default: Optional[datetime] = None) -> datetime:
    status = job.get('status') or {}
    completion = _job_time(status.get('completionTime'))
    if completion is not None:
        return completion
    for condition in status.get('conditions') or []:
        if condition.get('type') in ('Complete', 'Failed') and condition.get('status') == 'True':
            transition = _job_time(condition.get('lastTransitionTime'))
            if transition is not None:
                return transition
    return default or utcnow()


def _count(job: Mapping[str, Any], key: str) -> Optional[int]:
    annotations = (job.get('metadata') or {}).get('annotations') or {}
    value = annotations.get(key)
    if value is None:
        return None
    try:
        count = int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric %s=%r on job %s", key, value, job['metadata'].get('name'))
        return None
    return count if count >= 0 else None


def job_result(job: Mapping[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """
    Record and byte counts reported on a finished Job

    The kafka-backup tool annotates its Job with ``<prefix>/records`` and
    ``<prefix>/bytes`` when it exits; either may be missing.

    Returns:
        tuple: (records, size_bytes)
    """
    config = get_config()
    return _count(job, config.label('records')), _count(job, config.label('bytes'))
