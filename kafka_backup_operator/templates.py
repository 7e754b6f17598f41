from typing import Any, Dict, List, Mapping, Optional, Tuple

from kafka_backup_operator.config import get_config
from kafka_backup_operator.config_document import (
    CLUSTER_CA_DIR,
    CONFIG_DIR,
    CREDENTIALS_DIR,
    USER_CERTS_DIR,
    config_file_name,
    config_path,
)
from kafka_backup_operator.models import BackupSpec, ResourceMeta, RestoreSpec, SecretKeyRef
from kafka_backup_operator.resolvers import (
    NoAuth,
    ResolvedAuth,
    ResolvedKafkaCluster,
    ScramAuth,
    TlsAuth,
    cluster_ca_secret_name,
)

MODE_BACKUP = 'backup'
MODE_RESTORE = 'restore'


def config_map_name(cr_name: str, mode: str) -> str:
    return f'{cr_name}-{mode}-config'


def cronjob_name(cr_name: str) -> str:
    return f'{cr_name}-scheduled'


class ManifestTemplates:
    """
    Templates for Kubernetes manifests used by the operator
    """

    @staticmethod
    def labels(cr_name: str, cluster_name: str, job_type: str) -> Dict[str, str]:
        """
        Standard labels of every object owned by a KafkaBackup or KafkaRestore
        """
        config = get_config()
        return {
            'app.kubernetes.io/name': config.name,
            'app.kubernetes.io/instance': cr_name,
            'app.kubernetes.io/part-of': config.part_of,
            'app.kubernetes.io/managed-by': config.name,
            'strimzi.io/cluster': cluster_name,
            config.label('type'): job_type,
            config.label(job_type): cr_name,
        }

    @staticmethod
    def selector(cr_name: str, job_type: str) -> Dict[str, str]:
        """
        Labels selecting the Jobs of one resource
        """
        config = get_config()
        return {
            config.label('type'): job_type,
            config.label(job_type): cr_name,
        }

    @staticmethod
    def owner_reference(kind: str, owner: ResourceMeta) -> Dict[str, Any]:
        config = get_config()
        return {
            'apiVersion': config.api.api_version,
            'kind': kind,
            'name': owner.name,
            'uid': owner.uid,
            'controller': True,
            'blockOwnerDeletion': True,
        }

    @staticmethod
    def config_map_manifest(
        owner: ResourceMeta,
        kind: str,
        mode: str,
        cluster_name: str,
        content: str,
    ) -> Dict[str, Any]:
        """
        Generate the ConfigMap holding the rendered configuration document
        """
        return {
            'apiVersion': 'v1',
            'kind': 'ConfigMap',
            'metadata': {
                'name': config_map_name(owner.name, mode),
                'namespace': owner.namespace,
                'labels': ManifestTemplates.labels(owner.name, cluster_name, mode),
                'ownerReferences': [ManifestTemplates.owner_reference(kind, owner)],
            },
            'data': {
                config_file_name(mode): content,
            },
        }

    @staticmethod
    def volumes_and_mounts(
        cr_name: str,
        mode: str,
        cluster_name: str,
        auth: ResolvedAuth,
        storage_credentials: Optional[SecretKeyRef],
        ca_optional: bool = False,
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Generate volumes and container mounts for config, certificates and credentials

        The cluster CA volume is marked optional when the CA secret could not
        be read, so that pods of clusters without TLS still start.
        """
        volumes: List[Dict[str, Any]] = [
            {
                'name': 'config',
                'configMap': {'name': config_map_name(cr_name, mode)},
            },
            {
                'name': 'cluster-ca',
                'secret': {
                    'secretName': cluster_ca_secret_name(cluster_name),
                    'items': [{'key': 'ca.crt', 'path': 'ca.crt'}],
                    'optional': ca_optional,
                },
            },
        ]
        mounts: List[Dict[str, Any]] = [
            {'name': 'config', 'mountPath': CONFIG_DIR, 'readOnly': True},
            {'name': 'cluster-ca', 'mountPath': CLUSTER_CA_DIR, 'readOnly': True},
        ]

        if isinstance(auth, TlsAuth):
            volumes.append({
                'name': 'user-certs',
                'secret': {
                    'secretName': auth.secret_name,
                    'items': [
                        {'key': auth.certificate_key, 'path': 'user.crt'},
                        {'key': auth.private_key_key, 'path': 'user.key'},
                    ],
                },
            })
            mounts.append({'name': 'user-certs', 'mountPath': USER_CERTS_DIR, 'readOnly': True})
        elif isinstance(auth, ScramAuth):
            volumes.append({
                'name': 'user-certs',
                'secret': {
                    'secretName': auth.secret_name,
                    'items': [{'key': auth.password_key, 'path': 'password'}],
                },
            })
            mounts.append({'name': 'user-certs', 'mountPath': USER_CERTS_DIR, 'readOnly': True})
        elif not isinstance(auth, NoAuth):
            raise TypeError(f"Unknown authentication variant: {auth!r}")

        if storage_credentials is not None:
            volumes.append({
                'name': 'storage-credentials',
                'secret': {
                    'secretName': storage_credentials.name,
                    'items': [{'key': storage_credentials.key, 'path': 'credentials'}],
                },
            })
            mounts.append({'name': 'storage-credentials', 'mountPath': CREDENTIALS_DIR, 'readOnly': True})

        return volumes, mounts

    @staticmethod
    def apply_pod_template(pod_spec: Dict[str, Any], template: Optional[Mapping[str, Any]]) -> None:
        """
        Apply user-supplied pod and container overrides to a pod spec in place
        """
        if not template:
            return

        pod = template.get('pod') or {}
        if pod.get('affinity'):
            pod_spec['affinity'] = pod['affinity']
        if pod.get('tolerations'):
            pod_spec['tolerations'] = list(pod['tolerations'])
        if pod.get('securityContext'):
            pod_spec['securityContext'] = pod['securityContext']
        if pod.get('imagePullSecrets'):
            pod_spec['imagePullSecrets'] = list(pod['imagePullSecrets'])

        container_overrides = template.get('container') or {}
        if container_overrides and pod_spec.get('containers'):
            container = pod_spec['containers'][0]
            if container_overrides.get('env'):
                container.setdefault('env', []).extend(container_overrides['env'])
            if container_overrides.get('securityContext'):
                container['securityContext'] = container_overrides['securityContext']

    @staticmethod
    def _template_metadata(template: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
        if not template:
            return {}
        return (template.get('pod') or {}).get('metadata') or {}

    @staticmethod
    def _resources(resources: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
        if not resources:
            return None
        cleaned = {key: dict(value) for key, value in resources.items() if key in ('requests', 'limits') and value}
        return cleaned or None

    @staticmethod
    def _job_spec(
        owner: ResourceMeta,
        mode: str,
        cluster: ResolvedKafkaCluster,
        auth: ResolvedAuth,
        storage_credentials: Optional[SecretKeyRef],
        ca_optional: bool,
        image: Optional[str],
        resources: Optional[Mapping[str, Any]],
        template: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        config = get_config()

        volumes, mounts = ManifestTemplates.volumes_and_mounts(
            cr_name=owner.name,
            mode=mode,
            cluster_name=cluster.name,
            auth=auth,
            storage_credentials=storage_credentials,
            ca_optional=ca_optional,
        )

        container: Dict[str, Any] = {
            'name': mode,
            'image': config.image_for(image),
            'command': ['kafka-backup'],
            'args': [mode, '--config', config_path(mode)],
            'volumeMounts': mounts,
        }
        container_resources = ManifestTemplates._resources(resources)
        if container_resources:
            container['resources'] = container_resources

        pod_spec: Dict[str, Any] = {
            'restartPolicy': 'Never',
            'serviceAccountName': config.job.service_account,
            'containers': [container],
            'volumes': volumes,
        }
        ManifestTemplates.apply_pod_template(pod_spec, template)

        pod_metadata: Dict[str, Any] = {
            'labels': ManifestTemplates.labels(owner.name, cluster.name, mode),
        }
        annotations = dict(ManifestTemplates._template_metadata(template).get('annotations') or {})
        if annotations:
            pod_metadata['annotations'] = annotations

        return {
            'backoffLimit': config.job.backoff_limit,
            'template': {
                'metadata': pod_metadata,
                'spec': pod_spec,
            },
        }

    @staticmethod
    def _job_metadata(
        name: str,
        owner: ResourceMeta,
        kind: str,
        mode: str,
        cluster_name: str,
        template: Optional[Mapping[str, Any]],
        extra_labels: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        template_metadata = ManifestTemplates._template_metadata(template)
        # Selector and ownership labels win over user labels
        labels = dict(template_metadata.get('labels') or {})
        labels.update(ManifestTemplates.labels(owner.name, cluster_name, mode))
        labels.update(extra_labels or {})

        metadata: Dict[str, Any] = {
            'name': name,
            'namespace': owner.namespace,
            'labels': labels,
            'ownerReferences': [ManifestTemplates.owner_reference(kind, owner)],
        }
        annotations = dict(template_metadata.get('annotations') or {})
        if annotations:
            metadata['annotations'] = annotations
        return metadata

    @staticmethod
    def backup_job_manifest(
        job_name: str,
        owner: ResourceMeta,
        spec: BackupSpec,
        cluster: ResolvedKafkaCluster,
        auth: ResolvedAuth,
        ca_optional: bool = False,
    ) -> Dict[str, Any]:
        """
        Generate a one-shot backup Job manifest

        One-shot Jobs carry the generation they were created for.
        """
        config = get_config()
        return {
            'apiVersion': 'batch/v1',
            'kind': 'Job',
            'metadata': ManifestTemplates._job_metadata(
                job_name, owner, config.api.backup_kind, MODE_BACKUP, cluster.name, spec.template,
                extra_labels={config.label('generation'): str(owner.generation)},
            ),
            'spec': ManifestTemplates._job_spec(
                owner, MODE_BACKUP, cluster, auth, spec.storage.credentials_secret,
                ca_optional, spec.image, spec.resources, spec.template,
            ),
        }

    @staticmethod
    def restore_job_manifest(
        job_name: str,
        owner: ResourceMeta,
        spec: RestoreSpec,
        source_spec: BackupSpec,
        cluster: ResolvedKafkaCluster,
        auth: ResolvedAuth,
        ca_optional: bool = False,
    ) -> Dict[str, Any]:
        """
        Generate the restore Job manifest

        Storage credentials come from the source KafkaBackup.
        """
        config = get_config()
        return {
            'apiVersion': 'batch/v1',
            'kind': 'Job',
            'metadata': ManifestTemplates._job_metadata(
                job_name, owner, config.api.restore_kind, MODE_RESTORE, cluster.name, spec.template,
            ),
            'spec': ManifestTemplates._job_spec(
                owner, MODE_RESTORE, cluster, auth, source_spec.storage.credentials_secret,
                ca_optional, spec.image, spec.resources, spec.template,
            ),
        }

    @staticmethod
    def cronjob_manifest(
        owner: ResourceMeta,
        spec: BackupSpec,
        cluster: ResolvedKafkaCluster,
        auth: ResolvedAuth,
        ca_optional: bool = False,
    ) -> Dict[str, Any]:
        """
        Generate CronJob manifest for scheduled backups
        """
        config = get_config()
        schedule = spec.schedule

        cronjob_spec: Dict[str, Any] = {
            'schedule': schedule.cron,
            'suspend': schedule.suspend,
            'successfulJobsHistoryLimit': config.job.successful_jobs_history_limit,
            'failedJobsHistoryLimit': config.job.failed_jobs_history_limit,
            'concurrencyPolicy': 'Forbid',
            'jobTemplate': {
                'metadata': {
                    'labels': ManifestTemplates.labels(owner.name, cluster.name, MODE_BACKUP),
                },
                'spec': ManifestTemplates._job_spec(
                    owner, MODE_BACKUP, cluster, auth, spec.storage.credentials_secret,
                    ca_optional, spec.image, spec.resources, spec.template,
                ),
            },
        }
        if schedule.timezone:
            cronjob_spec['timeZone'] = schedule.timezone

        return {
            'apiVersion': 'batch/v1',
            'kind': 'CronJob',
            'metadata': ManifestTemplates._job_metadata(
                cronjob_name(owner.name), owner, config.api.backup_kind, MODE_BACKUP, cluster.name, spec.template,
            ),
            'spec': cronjob_spec,
        }
