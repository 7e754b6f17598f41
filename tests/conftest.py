"""Shared pytest fixtures for kafka_backup_operator tests."""

import base64
import copy
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from kafka_backup_operator.config import OperatorConfig, set_config
from kafka_backup_operator.errors import KubernetesApiError
from kafka_backup_operator.kube import CONTENT_HASH_ANNOTATION, content_hash

NAMESPACE = 'kafka'
CLUSTER = 'my-cluster'
FINALIZER = 'kafkabackup.com/cleanup'


def _merge(target: Dict[str, Any], patch: Mapping[str, Any]) -> None:
    """JSON merge patch semantics"""
    for key, value in patch.items():
        if value is None:
            target.pop(key, None)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def b64(value: str) -> str:
    return base64.b64encode(value.encode()).decode()


class FakeKube:
    """In-memory stand-in for KubeClient with the same methods"""

    def __init__(self):
        self.custom: Dict[Tuple[str, str, str, str], Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.jobs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.status_patches: List[Dict[str, Any]] = []
        self.metadata_patches: List[Dict[str, Any]] = []
        self.fail_job_creation = False
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # --- Seeding helpers ---

    def add_custom(self, plural: str, body: Dict[str, Any], group: str = 'kafkabackup.com') -> Dict[str, Any]:
        body = copy.deepcopy(body)
        metadata = body['metadata']
        metadata.setdefault('resourceVersion', self._next_version())
        self.custom[(group, plural, metadata['namespace'], metadata['name'])] = body
        return copy.deepcopy(body)

    def current(self, plural: str, name: str, namespace: str = NAMESPACE) -> Dict[str, Any]:
        return copy.deepcopy(self.custom[('kafkabackup.com', plural, namespace, name)])

    def add_kafka(
        self,
        name: str = CLUSTER,
        namespace: str = NAMESPACE,
        listeners: Optional[List[Dict[str, Any]]] = None,
        status_listeners: Optional[List[Dict[str, Any]]] = None,
        with_ca: bool = True,
    ) -> None:
        if listeners is None:
            listeners = [
                {'name': 'plain', 'port': 9092, 'type': 'internal', 'tls': False},
                {'name': 'tls', 'port': 9093, 'type': 'internal', 'tls': True},
            ]
        if status_listeners is None:
            status_listeners = [
                {'name': 'plain', 'bootstrapServers': f'{name}-kafka-bootstrap.{namespace}.svc:9092'},
                {'name': 'tls', 'bootstrapServers': f'{name}-kafka-bootstrap.{namespace}.svc:9093'},
            ]
        self.add_custom('kafkas', {
            'apiVersion': 'kafka.strimzi.io/v1beta2',
            'kind': 'Kafka',
            'metadata': {'name': name, 'namespace': namespace},
            'spec': {'kafka': {'replicas': 3, 'listeners': listeners}},
            'status': {'listeners': status_listeners},
        }, group='kafka.strimzi.io')
        if with_ca:
            self.add_secret(namespace, f'{name}-cluster-ca-cert', {'ca.crt': '-----BEGIN CERTIFICATE-----'})

    def add_kafka_user(self, name: str, namespace: str = NAMESPACE, secret: Optional[str] = None) -> None:
        status = {'secret': secret} if secret else {}
        self.add_custom('kafkausers', {
            'apiVersion': 'kafka.strimzi.io/v1beta2',
            'kind': 'KafkaUser',
            'metadata': {'name': name, 'namespace': namespace},
            'status': status,
        }, group='kafka.strimzi.io')

    def add_secret(self, namespace: str, name: str, data: Mapping[str, str]) -> None:
        self.secrets[(namespace, name)] = {key: b64(value) for key, value in data.items()}

    def add_job(self, name: str, labels: Mapping[str, str], namespace: str = NAMESPACE, status=None) -> None:
        self.jobs[(namespace, name)] = {
            'apiVersion': 'batch/v1',
            'kind': 'Job',
            'metadata': {'name': name, 'namespace': namespace, 'labels': dict(labels)},
            'spec': {},
            'status': dict(status or {}),
        }

    def finish_job(self, name: str, succeeded: bool = True, start: str = None, completion: str = None,
                   namespace: str = NAMESPACE, annotations: Optional[Mapping[str, str]] = None) -> None:
        job = self.jobs[(namespace, name)]
        if annotations:
            job['metadata'].setdefault('annotations', {}).update(annotations)
        status = job['status']
        if start:
            status['startTime'] = start
        if succeeded:
            status['succeeded'] = 1
            if completion:
                status['completionTime'] = completion
            status['conditions'] = [{'type': 'Complete', 'status': 'True'}]
        else:
            status['failed'] = 4
            status['conditions'] = [{'type': 'Failed', 'status': 'True', 'lastTransitionTime': completion}]

    def job_names(self, namespace: str = NAMESPACE) -> List[str]:
        return sorted(name for ns, name in self.jobs if ns == namespace)

    # --- KubeClient interface ---

    def get_custom_object(self, plural, namespace, name, group=None, version=None):
        self.calls.append(('get_custom_object', plural, namespace, name))
        key = (group or 'kafkabackup.com', plural, namespace, name)
        if key not in self.custom:
            raise KubernetesApiError(f"{plural} {namespace}/{name} not found", status=404)
        return copy.deepcopy(self.custom[key])

    def get_secret(self, namespace, name):
        self.calls.append(('get_secret', namespace, name))
        if (namespace, name) not in self.secrets:
            raise KubernetesApiError(f"secret {namespace}/{name} not found", status=404)
        return dict(self.secrets[(namespace, name)])

    def list_jobs(self, namespace, labels):
        self.calls.append(('list_jobs', namespace))
        return [
            copy.deepcopy(job)
            for (ns, _), job in self.jobs.items()
            if ns == namespace and all(job['metadata']['labels'].get(k) == v for k, v in labels.items())
        ]

    def apply(self, body):
        kind = body['kind']
        namespace = body['metadata']['namespace']
        name = body['metadata']['name']
        self.calls.append(('apply', kind, namespace, name))

        desired = copy.deepcopy(body)
        digest = content_hash(desired)
        desired['metadata'].setdefault('annotations', {})[CONTENT_HASH_ANNOTATION] = digest

        existing = self.objects.get((kind, namespace, name))
        if existing is not None and existing['metadata']['annotations'].get(CONTENT_HASH_ANNOTATION) == digest:
            return False
        desired['metadata']['resourceVersion'] = self._next_version()
        self.objects[(kind, namespace, name)] = desired
        return True

    def create_job(self, body):
        namespace = body['metadata']['namespace']
        name = body['metadata']['name']
        self.calls.append(('create_job', namespace, name))
        if self.fail_job_creation:
            raise KubernetesApiError("quota exceeded", status=403)
        if (namespace, name) in self.jobs:
            raise KubernetesApiError(f"job {name} already exists", status=409)
        job = copy.deepcopy(body)
        job['status'] = {}
        self.jobs[(namespace, name)] = job
        return copy.deepcopy(job)

    def delete(self, kind, namespace, name):
        self.calls.append(('delete', kind, namespace, name))
        if kind == 'Job':
            return self.jobs.pop((namespace, name), None) is not None
        return self.objects.pop((kind, namespace, name), None) is not None

    def patch_metadata(self, plural, namespace, name, metadata):
        self.calls.append(('patch_metadata', plural, namespace, name))
        self.metadata_patches.append(copy.deepcopy(metadata))
        stored = self.custom.get(('kafkabackup.com', plural, namespace, name))
        if stored is None:
            return {}
        expected = metadata.get('resourceVersion')
        if expected is not None and expected != stored['metadata'].get('resourceVersion'):
            raise KubernetesApiError("conflict", status=409)
        patch = {key: value for key, value in metadata.items() if key != 'resourceVersion'}
        _merge(stored['metadata'], patch)
        stored['metadata']['resourceVersion'] = self._next_version()
        return copy.deepcopy(stored)

    def patch_status(self, plural, namespace, name, status):
        self.calls.append(('patch_status', plural, namespace, name))
        self.status_patches.append(copy.deepcopy(status))
        stored = self.custom.get(('kafkabackup.com', plural, namespace, name))
        if stored is None:
            return {}
        _merge(stored.setdefault('status', {}), status)
        stored['metadata']['resourceVersion'] = self._next_version()
        return copy.deepcopy(stored)


@pytest.fixture(autouse=True)
def operator_config():
    """Install a default configuration for each test."""
    config = OperatorConfig()
    set_config(config)
    return config


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def cluster_kube(kube: FakeKube) -> FakeKube:
    """A fake cluster with a Strimzi Kafka, its CA and a SCRAM user."""
    kube.add_kafka()
    kube.add_kafka_user('backup-user', secret='backup-user')
    kube.add_secret(NAMESPACE, 'backup-user', {'password': 's3cret', 'sasl.jaas.config': 'x'})
    kube.add_secret(NAMESPACE, 'aws-creds', {'credentials': '[default]'})
    return kube


def backup_spec(**overrides) -> Dict[str, Any]:
    spec = {
        'strimziClusterRef': {'name': CLUSTER},
        'authentication': {'type': 'scram-sha-512', 'kafkaUserRef': {'name': 'backup-user'}},
        'topics': {'include': ['orders.*'], 'exclude': ['__.*']},
        'storage': {
            'type': 's3',
            's3': {
                'bucket': 'kafka-backups',
                'region': 'us-east-1',
                'credentialsSecret': {'name': 'aws-creds', 'key': 'credentials'},
            },
        },
    }
    spec.update(overrides)
    return spec


def resource_body(
    kind: str,
    name: str,
    spec: Dict[str, Any],
    generation: int = 1,
    finalizers: Optional[List[str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    status: Optional[Dict[str, Any]] = None,
    deletion_timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        'name': name,
        'namespace': NAMESPACE,
        'uid': f'uid-{name}',
        'generation': generation,
        'finalizers': list(finalizers if finalizers is not None else [FINALIZER]),
    }
    if annotations:
        metadata['annotations'] = dict(annotations)
    if deletion_timestamp:
        metadata['deletionTimestamp'] = deletion_timestamp
    body = {
        'apiVersion': 'kafkabackup.com/v1alpha1',
        'kind': kind,
        'metadata': metadata,
        'spec': spec,
    }
    if status is not None:
        body['status'] = status
    return body


def backup_body(name: str = 'nightly', spec: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
    return resource_body('KafkaBackup', name, spec if spec is not None else backup_spec(), **kwargs)


def restore_body(name: str = 'recover', spec: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
    if spec is None:
        spec = {
            'strimziClusterRef': {'name': CLUSTER},
            'backupRef': {'name': 'nightly', 'backupId': 'nightly-20260213-020000'},
        }
    return resource_body('KafkaRestore', name, spec, **kwargs)
