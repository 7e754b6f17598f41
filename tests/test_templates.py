"""Unit tests for manifest templates."""

from conftest import backup_body, backup_spec
from kafka_backup_operator.models import BackupSpec, ResourceMeta, RestoreSpec
from kafka_backup_operator.resolvers import NoAuth, ResolvedKafkaCluster, ScramAuth, TlsAuth
from kafka_backup_operator.templates import ManifestTemplates

CLUSTER = ResolvedKafkaCluster(
    name='my-cluster',
    namespace='kafka',
    bootstrap_servers='my-cluster-kafka-bootstrap.kafka.svc:9093',
    replicas=3,
    tls_enabled=True,
    listener_name='tls',
)
OWNER = ResourceMeta.from_body(backup_body())


def volumes_by_name(pod_spec):
    return {volume['name']: volume for volume in pod_spec['volumes']}


class TestLabelsAndOwnership:
    """Tests for labels and owner references."""

    def test_labels(self) -> None:
        labels = ManifestTemplates.labels('nightly', 'my-cluster', 'backup')

        assert labels == {
            'app.kubernetes.io/name': 'kafka-backup-operator',
            'app.kubernetes.io/instance': 'nightly',
            'app.kubernetes.io/part-of': 'kafka-backup',
            'app.kubernetes.io/managed-by': 'kafka-backup-operator',
            'strimzi.io/cluster': 'my-cluster',
            'kafkabackup.com/type': 'backup',
            'kafkabackup.com/backup': 'nightly',
        }

    def test_owner_reference(self) -> None:
        reference = ManifestTemplates.owner_reference('KafkaBackup', OWNER)

        assert reference == {
            'apiVersion': 'kafkabackup.com/v1alpha1',
            'kind': 'KafkaBackup',
            'name': 'nightly',
            'uid': 'uid-nightly',
            'controller': True,
            'blockOwnerDeletion': True,
        }

    def test_config_map(self) -> None:
        manifest = ManifestTemplates.config_map_manifest(OWNER, 'KafkaBackup', 'backup', 'my-cluster', 'mode: backup\n')

        assert manifest['metadata']['name'] == 'nightly-backup-config'
        assert manifest['data'] == {'backup.yaml': 'mode: backup\n'}
        assert manifest['metadata']['ownerReferences'][0]['uid'] == 'uid-nightly'


class TestBackupJob:
    """Tests for backup Job manifests."""

    def test_container_and_volumes(self) -> None:
        spec = BackupSpec.from_dict(backup_spec())

        job = ManifestTemplates.backup_job_manifest(
            'nightly-20260213-020000', OWNER, spec, CLUSTER, ScramAuth('backup-user', 'backup-user'),
        )

        assert job['metadata']['labels']['kafkabackup.com/generation'] == '1'
        assert job['spec']['backoffLimit'] == 3
        pod_spec = job['spec']['template']['spec']
        assert pod_spec['restartPolicy'] == 'Never'
        container = pod_spec['containers'][0]
        assert container['image'] == 'ghcr.io/osodevops/kafka-backup:latest'
        assert container['command'] == ['kafka-backup']
        assert container['args'] == ['backup', '--config', '/config/backup.yaml']
        assert {mount['mountPath'] for mount in container['volumeMounts']} == {
            '/config', '/certs/cluster-ca', '/certs/user', '/credentials',
        }

        volumes = volumes_by_name(pod_spec)
        assert volumes['config']['configMap']['name'] == 'nightly-backup-config'
        assert volumes['cluster-ca']['secret']['secretName'] == 'my-cluster-cluster-ca-cert'
        assert volumes['user-certs']['secret']['items'] == [{'key': 'password', 'path': 'password'}]
        assert volumes['storage-credentials']['secret']['items'] == [{'key': 'credentials', 'path': 'credentials'}]

    def test_tls_user_certs_and_optional_ca(self) -> None:
        spec = BackupSpec.from_dict(backup_spec(storage={'type': 'gcs', 'gcs': {'bucket': 'b'}}))

        job = ManifestTemplates.backup_job_manifest(
            'job', OWNER, spec, CLUSTER, TlsAuth('client', 'tls.crt', 'tls.key'), ca_optional=True,
        )

        volumes = volumes_by_name(job['spec']['template']['spec'])
        assert volumes['cluster-ca']['secret']['optional'] is True
        assert volumes['user-certs']['secret']['items'] == [
            {'key': 'tls.crt', 'path': 'user.crt'},
            {'key': 'tls.key', 'path': 'user.key'},
        ]
        assert 'storage-credentials' not in volumes

    def test_pod_template_overrides(self) -> None:
        spec = BackupSpec.from_dict(backup_spec(
            image='registry.local/kafka-backup:1.2',
            resources={'requests': {'cpu': '500m'}, 'limits': {}},
            template={
                'pod': {
                    'metadata': {'labels': {'team': 'data'}, 'annotations': {'sidecar.istio.io/inject': 'false'}},
                    'tolerations': [{'key': 'dedicated', 'operator': 'Exists'}],
                    'imagePullSecrets': [{'name': 'regcred'}],
                },
                'container': {
                    'env': [{'name': 'RUST_LOG', 'value': 'debug'}],
                    'securityContext': {'runAsNonRoot': True},
                },
            },
        ))

        job = ManifestTemplates.backup_job_manifest('job', OWNER, spec, CLUSTER, NoAuth())

        assert job['metadata']['labels']['team'] == 'data'
        assert job['metadata']['annotations'] == {'sidecar.istio.io/inject': 'false'}
        template = job['spec']['template']
        assert template['metadata']['annotations'] == {'sidecar.istio.io/inject': 'false'}
        pod_spec = template['spec']
        assert pod_spec['tolerations'] == [{'key': 'dedicated', 'operator': 'Exists'}]
        assert pod_spec['imagePullSecrets'] == [{'name': 'regcred'}]
        container = pod_spec['containers'][0]
        assert container['image'] == 'registry.local/kafka-backup:1.2'
        assert container['resources'] == {'requests': {'cpu': '500m'}}
        assert container['env'] == [{'name': 'RUST_LOG', 'value': 'debug'}]
        assert container['securityContext'] == {'runAsNonRoot': True}

    def test_template_labels_cannot_override_selector(self) -> None:
        """Should keep the Job findable by its owner when user labels collide."""
        spec = BackupSpec.from_dict(backup_spec(template={
            'pod': {'metadata': {'labels': {
                'kafkabackup.com/backup': 'other',
                'kafkabackup.com/type': 'restore',
                'app.kubernetes.io/managed-by': 'helm',
                'team': 'data',
            }}},
        }))

        job = ManifestTemplates.backup_job_manifest('job', OWNER, spec, CLUSTER, NoAuth())
        cronjob = ManifestTemplates.cronjob_manifest(OWNER, spec, CLUSTER, NoAuth())

        for labels in (job['metadata']['labels'], cronjob['metadata']['labels']):
            assert labels['kafkabackup.com/backup'] == 'nightly'
            assert labels['kafkabackup.com/type'] == 'backup'
            assert labels['app.kubernetes.io/managed-by'] == 'kafka-backup-operator'
            assert labels['team'] == 'data'
        assert job['metadata']['labels']['kafkabackup.com/generation'] == '1'


class TestCronJob:
    """Tests for CronJob manifests."""

    def test_schedule(self) -> None:
        spec = BackupSpec.from_dict(backup_spec(schedule={'cron': '0 2 * * *', 'timezone': 'UTC', 'suspend': True}))

        cronjob = ManifestTemplates.cronjob_manifest(OWNER, spec, CLUSTER, NoAuth())

        assert cronjob['metadata']['name'] == 'nightly-scheduled'
        assert cronjob['spec']['schedule'] == '0 2 * * *'
        assert cronjob['spec']['concurrencyPolicy'] == 'Forbid'
        assert cronjob['spec']['timeZone'] == 'UTC'
        assert cronjob['spec']['suspend'] is True
        assert cronjob['spec']['successfulJobsHistoryLimit'] == 3
        job_template = cronjob['spec']['jobTemplate']
        assert job_template['metadata']['labels']['kafkabackup.com/backup'] == 'nightly'
        assert 'kafkabackup.com/generation' not in job_template['metadata']['labels']


class TestRestoreJob:
    """Tests for restore Job manifests."""

    def test_uses_source_storage_credentials(self) -> None:
        owner = ResourceMeta(name='recover', namespace='kafka', uid='uid-recover')
        spec = RestoreSpec.from_dict({
            'strimziClusterRef': {'name': 'my-cluster'},
            'backupRef': {'name': 'nightly'},
        })
        source = BackupSpec.from_dict(backup_spec())

        job = ManifestTemplates.restore_job_manifest('recover-20260213-020000', owner, spec, source, CLUSTER, NoAuth())

        assert job['metadata']['labels']['kafkabackup.com/restore'] == 'recover'
        assert job['metadata']['ownerReferences'][0]['kind'] == 'KafkaRestore'
        pod_spec = job['spec']['template']['spec']
        assert pod_spec['containers'][0]['args'] == ['restore', '--config', '/config/restore.yaml']
        assert volumes_by_name(pod_spec)['storage-credentials']['secret']['secretName'] == 'aws-creds'

    def test_config_map_names_do_not_collide(self) -> None:
        """Should give a backup and a restore of the same name separate ConfigMaps."""
        restore_owner = ResourceMeta(name='nightly', namespace='kafka', uid='uid-restore')
        spec = RestoreSpec.from_dict({'strimziClusterRef': {'name': 'my-cluster'}, 'backupRef': {'name': 'nightly'}})
        source = BackupSpec.from_dict(backup_spec())

        backup_map = ManifestTemplates.config_map_manifest(OWNER, 'KafkaBackup', 'backup', 'my-cluster', 'a')
        restore_map = ManifestTemplates.config_map_manifest(restore_owner, 'KafkaRestore', 'restore', 'my-cluster', 'b')
        job = ManifestTemplates.restore_job_manifest('nightly-1', restore_owner, spec, source, CLUSTER, NoAuth())

        assert backup_map['metadata']['name'] == 'nightly-backup-config'
        assert restore_map['metadata']['name'] == 'nightly-restore-config'
        config_volume = volumes_by_name(job['spec']['template']['spec'])['config']
        assert config_volume['configMap']['name'] == 'nightly-restore-config'
