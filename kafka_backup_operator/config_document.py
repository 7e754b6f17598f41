"""
Configuration document consumed by the kafka-backup executable

The reconcilers store the rendered document in a ConfigMap mounted at
/config inside backup and restore pods.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import yaml

from kafka_backup_operator.errors import InvalidConfigError, SerializationError
from kafka_backup_operator.models import (
    AzureStorage,
    BackupSpec,
    GcsStorage,
    RestoreSpec,
    S3Storage,
    StorageSpec,
    parse_time,
)
from kafka_backup_operator.resolvers import NoAuth, ResolvedAuth, ResolvedKafkaCluster, ScramAuth, TlsAuth

# Paths inside the pod, matching the volume mounts in templates.py
CONFIG_DIR = '/config'
CLUSTER_CA_DIR = '/certs/cluster-ca'
USER_CERTS_DIR = '/certs/user'
CREDENTIALS_DIR = '/credentials'

CA_CERT_PATH = f'{CLUSTER_CA_DIR}/ca.crt'
USER_CERT_PATH = f'{USER_CERTS_DIR}/user.crt'
USER_KEY_PATH = f'{USER_CERTS_DIR}/user.key'
PASSWORD_PATH = f'{USER_CERTS_DIR}/password'
CREDENTIALS_FILE = f'{CREDENTIALS_DIR}/credentials'

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def config_file_name(mode: str) -> str:
    return f'{mode}.yaml'


def config_path(mode: str) -> str:
    return f'{CONFIG_DIR}/{config_file_name(mode)}'


def kafka_connection(cluster: ResolvedKafkaCluster, auth: ResolvedAuth) -> Dict[str, Any]:
    """The source (backup) or target (restore) block"""
    connection: Dict[str, Any] = {'bootstrap_servers': cluster.bootstrap_servers}

    if cluster.tls_enabled:
        connection['tls'] = {'enabled': True, 'ca_cert_path': CA_CERT_PATH}

    if isinstance(auth, TlsAuth):
        connection['authentication'] = {
            'type': 'tls',
            'cert_path': USER_CERT_PATH,
            'key_path': USER_KEY_PATH,
        }
    elif isinstance(auth, ScramAuth):
        connection['authentication'] = {
            'type': 'scram-sha-512',
            'username': auth.username,
            'password_file': PASSWORD_PATH,
        }
    elif not isinstance(auth, NoAuth):
        raise TypeError(f"Unknown authentication variant: {auth!r}")

    return connection


def storage_block(storage: StorageSpec) -> Dict[str, Any]:
    if isinstance(storage, S3Storage):
        block: Dict[str, Any] = {'type': 's3', 'bucket': storage.bucket}
        optional = {
            'region': storage.region,
            'prefix': storage.prefix,
            'endpoint': storage.endpoint,
            'force_path_style': storage.force_path_style,
        }
    elif isinstance(storage, AzureStorage):
        block = {
            'type': 'azure',
            'container': storage.container,
            'storage_account': storage.storage_account,
        }
        optional = {'prefix': storage.prefix}
    elif isinstance(storage, GcsStorage):
        block = {'type': 'gcs', 'bucket': storage.bucket}
        optional = {'prefix': storage.prefix}
    else:
        raise TypeError(f"Unknown storage variant: {storage!r}")

    block.update({key: value for key, value in optional.items() if value is not None})
    if storage.credentials_secret is not None:
        block['credentials_file'] = CREDENTIALS_FILE
    return block


def epoch_millis(timestamp: str) -> int:
    """
    Convert an RFC 3339 timestamp to milliseconds since the epoch

    Raises:
        InvalidConfigError: If the timestamp cannot be parsed or has no offset
    """
    try:
        parsed = parse_time(timestamp)
    except ValueError as e:
        raise InvalidConfigError(f"Invalid timestamp format: {timestamp}") from e
    return (parsed - _EPOCH) // timedelta(milliseconds=1)


def build_backup_config(name: str, spec: BackupSpec, cluster: ResolvedKafkaCluster, auth: ResolvedAuth) -> Dict[str, Any]:
    document: Dict[str, Any] = {
        'mode': 'backup',
        # The executable substitutes the run's timestamp
        'backup_id': f'{name}-{{timestamp}}',
        'source': kafka_connection(cluster, auth),
        'storage': storage_block(spec.storage),
    }

    if spec.backup is not None:
        options = {
            'compression': spec.backup.compression,
            'segment_max_bytes': spec.backup.segment_size,
            'max_concurrent_partitions': spec.backup.parallelism,
        }
        document['backup'] = {key: value for key, value in options.items() if value is not None}

    if spec.topics is not None:
        topics: Dict[str, Any] = {}
        if spec.topics.include:
            topics['include'] = list(spec.topics.include)
        if spec.topics.exclude:
            topics['exclude'] = list(spec.topics.exclude)
        document['topics'] = topics

    return document


def resolve_backup_id(spec: RestoreSpec, source_backup: Mapping[str, Any]) -> str:
    """Explicit backupRef.backupId, else the source's most recent backup"""
    if spec.backup_ref.backup_id:
        return spec.backup_ref.backup_id
    last_backup = (source_backup.get('status') or {}).get('lastBackup') or {}
    if last_backup.get('id'):
        return last_backup['id']
    raise InvalidConfigError(
        f"backupRef.backupId is not set and KafkaBackup '{spec.backup_ref.name}' has no completed backup"
    )


def point_in_time_target(spec: RestoreSpec) -> Optional[datetime]:
    """The absolute restore cutoff, when one is given"""
    pitr = spec.point_in_time
    if pitr is None or not pitr.timestamp:
        return None
    try:
        return parse_time(pitr.timestamp)
    except ValueError as e:
        raise InvalidConfigError(f"Invalid timestamp format: {pitr.timestamp}") from e


def build_restore_config(
    spec: RestoreSpec,
    source_spec: BackupSpec,
    backup_id: str,
    cluster: ResolvedKafkaCluster,
    auth: ResolvedAuth,
) -> Dict[str, Any]:
    """
    Build the restore document

    Storage comes from the source KafkaBackup. An absolute point-in-time
    timestamp takes precedence over offsetFromEnd.
    """
    document: Dict[str, Any] = {
        'mode': 'restore',
        'backup_id': backup_id,
        'target': kafka_connection(cluster, auth),
        'storage': storage_block(source_spec.storage),
    }

    options: Dict[str, Any] = {}
    if spec.restore is not None and spec.restore.parallelism is not None:
        options['max_concurrent_partitions'] = spec.restore.parallelism
    if spec.consumer_groups is not None and spec.consumer_groups.restore:
        options['restore_consumer_groups'] = True
        if spec.consumer_groups.mapping:
            options['consumer_group_mapping'] = dict(spec.consumer_groups.mapping)
    if options:
        document['restore'] = options

    pitr = spec.point_in_time
    if pitr is not None:
        if pitr.timestamp:
            document['time_window_end'] = epoch_millis(pitr.timestamp)
        elif pitr.offset_from_end:
            document['offset_from_end'] = pitr.offset_from_end

    if spec.topic_mapping:
        document['topic_mapping'] = dict(spec.topic_mapping)

    return document


def render(document: Dict[str, Any]) -> str:
    try:
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)
    except yaml.YAMLError as e:
        raise SerializationError(f"Failed to render configuration document: {e}") from e
