"""
Thin wrapper around the official kubernetes client

Reconcilers talk to the cluster only through KubeClient so that every API
failure reaches them as an OperatorError and so tests can substitute an
in-memory implementation with the same methods.
"""

import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import kubernetes
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from kafka_backup_operator.config import OperatorConfig, get_config
from kafka_backup_operator.errors import KubernetesApiError

logger = logging.getLogger(__name__)

CONTENT_HASH_ANNOTATION = 'kafkabackup.com/content-hash'


def content_hash(body: Mapping[str, Any]) -> str:
    """Stable hash of a manifest, ignoring the hash annotation itself"""
    stripped = json.loads(json.dumps(body, sort_keys=True, default=str))
    annotations = stripped.get('metadata', {}).get('annotations') or {}
    annotations.pop(CONTENT_HASH_ANNOTATION, None)
    encoded = json.dumps(stripped, sort_keys=True, separators=(',', ':')).encode()
    return hashlib.sha256(encoded).hexdigest()[:16]


def label_selector(labels: Mapping[str, str]) -> str:
    return ','.join(f'{key}={value}' for key, value in sorted(labels.items()))


# Connection resets and timeouts surface from urllib3 without an HTTP status
API_ERRORS = (ApiException, HTTPError)


def _status(e: Exception) -> Optional[int]:
    return e.status if isinstance(e, ApiException) else None


def _translate(e: Exception, what: str) -> KubernetesApiError:
    if isinstance(e, ApiException):
        return KubernetesApiError(f"Kubernetes API error on {what}: {e.status} {e.reason}", status=e.status)
    return KubernetesApiError(f"Kubernetes API unreachable on {what}: {e}")


class KubeClient:
    """
    Kubernetes operations used by the reconcilers

    All objects are exchanged as camelCase dictionaries, the same shape the
    manifest templates produce and kopf delivers.
    """

    def __init__(self, config: Optional[OperatorConfig] = None, api_client: Any = None):
        self._config = config or get_config()
        self._api_client = api_client or kubernetes.client.ApiClient()
        self.core_v1 = kubernetes.client.CoreV1Api(self._api_client)
        self.batch_v1 = kubernetes.client.BatchV1Api(self._api_client)
        self.custom_objects = kubernetes.client.CustomObjectsApi(self._api_client)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self._api_client.sanitize_for_serialization(obj)

    # --- Reads ---

    def get_custom_object(
        self,
        plural: str,
        namespace: str,
        name: str,
        group: Optional[str] = None,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            return self.custom_objects.get_namespaced_custom_object(
                group=group or self._config.api.group,
                version=version or self._config.api.version,
                namespace=namespace,
                plural=plural,
                name=name,
            )
        except API_ERRORS as e:
            raise _translate(e, f'{plural} {namespace}/{name}') from e

    def get_secret(self, namespace: str, name: str) -> Dict[str, str]:
        """Return the base64-encoded data of a Secret"""
        try:
            secret = self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
        except API_ERRORS as e:
            raise _translate(e, f'secret {namespace}/{name}') from e
        return dict(secret.data or {})

    def list_jobs(self, namespace: str, labels: Mapping[str, str]) -> List[Dict[str, Any]]:
        try:
            jobs = self.batch_v1.list_namespaced_job(
                namespace=namespace,
                label_selector=label_selector(labels),
            )
        except API_ERRORS as e:
            raise _translate(e, f'jobs in {namespace}') from e
        return [self._to_dict(job) for job in jobs.items]

    # --- Writes ---

    def _apply_ops(self, kind: str) -> Tuple[Callable, Callable, Callable]:
        if kind == 'ConfigMap':
            return (
                self.core_v1.read_namespaced_config_map,
                self.core_v1.create_namespaced_config_map,
                self.core_v1.replace_namespaced_config_map,
            )
        if kind == 'CronJob':
            return (
                self.batch_v1.read_namespaced_cron_job,
                self.batch_v1.create_namespaced_cron_job,
                self.batch_v1.replace_namespaced_cron_job,
            )
        raise ValueError(f"apply() does not support kind {kind}")

    def apply(self, body: Dict[str, Any]) -> bool:
        """
        Create or update an owned object

        The desired content is fingerprinted into an annotation; an existing
        object with the same fingerprint is left untouched. Updates replace
        the object at the resourceVersion that was read, so a concurrent
        writer causes a conflict instead of a lost update.

        Returns:
            bool: True when the object was created or changed
        """
        kind = body['kind']
        name = body['metadata']['name']
        namespace = body['metadata']['namespace']
        read, create, replace = self._apply_ops(kind)

        desired = json.loads(json.dumps(body))
        digest = content_hash(desired)
        desired['metadata'].setdefault('annotations', {})[CONTENT_HASH_ANNOTATION] = digest

        try:
            existing = read(name=name, namespace=namespace)
        except API_ERRORS as e:
            if _status(e) != 404:
                raise _translate(e, f'{kind} {namespace}/{name}') from e
            existing = None

        try:
            if existing is None:
                create(namespace=namespace, body=desired)
                logger.info("Created %s %s/%s", kind, namespace, name)
                return True

            annotations = existing.metadata.annotations or {}
            if annotations.get(CONTENT_HASH_ANNOTATION) == digest:
                logger.debug("%s %s/%s is up to date", kind, namespace, name)
                return False

            desired['metadata']['resourceVersion'] = existing.metadata.resource_version
            replace(name=name, namespace=namespace, body=desired)
            logger.info("Updated %s %s/%s", kind, namespace, name)
            return True
        except API_ERRORS as e:
            raise _translate(e, f'{kind} {namespace}/{name}') from e

    def create_job(self, body: Dict[str, Any]) -> Dict[str, Any]:
        namespace = body['metadata']['namespace']
        try:
            job = self.batch_v1.create_namespaced_job(namespace=namespace, body=body)
        except API_ERRORS as e:
            raise _translate(e, f"job {namespace}/{body['metadata']['name']}") from e
        return self._to_dict(job)

    def delete(self, kind: str, namespace: str, name: str) -> bool:
        """
        Delete an owned object, tolerating its absence

        Returns:
            bool: False when the object did not exist
        """
        if kind == 'Job':
            call = self.batch_v1.delete_namespaced_job
        elif kind == 'CronJob':
            call = self.batch_v1.delete_namespaced_cron_job
        elif kind == 'ConfigMap':
            call = self.core_v1.delete_namespaced_config_map
        else:
            raise ValueError(f"delete() does not support kind {kind}")

        try:
            call(name=name, namespace=namespace, propagation_policy='Background')
        except API_ERRORS as e:
            if _status(e) == 404:
                return False
            raise _translate(e, f'{kind} {namespace}/{name}') from e
        return True

    def patch_metadata(self, plural: str, namespace: str, name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch metadata of one of our custom resources"""
        try:
            return self.custom_objects.patch_namespaced_custom_object(
                group=self._config.api.group,
                version=self._config.api.version,
                namespace=namespace,
                plural=plural,
                name=name,
                body={'metadata': metadata},
            )
        except API_ERRORS as e:
            raise _translate(e, f'{plural} {namespace}/{name}') from e

    def patch_status(self, plural: str, namespace: str, name: str, status: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom_objects.patch_namespaced_custom_object_status(
                group=self._config.api.group,
                version=self._config.api.version,
                namespace=namespace,
                plural=plural,
                name=name,
                body={'status': status},
            )
        except API_ERRORS as e:
            raise _translate(e, f'{plural} {namespace}/{name} status') from e
