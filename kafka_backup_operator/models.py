"""
Typed views of the KafkaBackup and KafkaRestore custom resources

Bodies arrive as camelCase dictionaries from the API server. They are parsed
into frozen dataclasses once per reconciliation pass; malformed values raise
InvalidConfigError so the pass surfaces them on the resource's status.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from kafka_backup_operator.errors import InvalidConfigError, MissingObjectKeyError


AUTH_TLS = 'tls'
AUTH_SCRAM = 'scram-sha-512'

STATUS_RUNNING = 'Running'
STATUS_COMPLETED = 'Completed'
STATUS_FAILED = 'Failed'

_FRACTION = re.compile(r'\.(\d+)')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; naive values are rejected"""
    if not isinstance(value, str) or not value:
        raise ValueError(f"not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    # fromisoformat before 3.11 takes exactly 3 or 6 fraction digits
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without offset: {value!r}")
    return parsed


def format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _optional_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return parse_time(value)


def _require(data: Mapping[str, Any], key: str, where: str) -> Any:
    value = data.get(key)
    if value is None or value == '':
        raise InvalidConfigError(f"{where}.{key} is required")
    return value


def _strings(value: Any, where: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidConfigError(f"{where} must be a list of strings")
    return tuple(value)


def _int(value: Any, where: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfigError(f"{where} must be an integer")
    return value


# --- Identity ---

@dataclass(frozen=True)
class ResourceMeta:
    name: str
    namespace: str
    uid: str = ''
    generation: int = 0
    resource_version: Optional[str] = None
    deletion_timestamp: Optional[str] = None
    finalizers: Tuple[str, ...] = ()
    annotations: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> 'ResourceMeta':
        metadata = body.get('metadata') or {}
        if not metadata.get('name'):
            raise MissingObjectKeyError('.metadata.name')
        if not metadata.get('namespace'):
            raise MissingObjectKeyError('.metadata.namespace')
        return cls(
            name=metadata['name'],
            namespace=metadata['namespace'],
            uid=metadata.get('uid') or '',
            generation=metadata.get('generation') or 0,
            resource_version=metadata.get('resourceVersion'),
            deletion_timestamp=metadata.get('deletionTimestamp'),
            finalizers=tuple(metadata.get('finalizers') or ()),
            annotations=dict(metadata.get('annotations') or {}),
        )

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None


# --- References and authentication ---

@dataclass(frozen=True)
class ClusterRef:
    name: str
    namespace: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any, where: str = 'spec.strimziClusterRef') -> 'ClusterRef':
        if not isinstance(data, dict):
            raise InvalidConfigError(f"{where} is required")
        return cls(name=_require(data, 'name', where), namespace=data.get('namespace'))


@dataclass(frozen=True)
class SecretKeyRef:
    name: str
    key: str

    @classmethod
    def from_dict(cls, data: Any, where: str) -> Optional['SecretKeyRef']:
        if data is None:
            return None
        if not isinstance(data, dict):
            raise InvalidConfigError(f"{where} must be an object")
        return cls(name=_require(data, 'name', where), key=_require(data, 'key', where))


@dataclass(frozen=True)
class CertificateAndKey:
    secret_name: str
    certificate: str
    key: str


@dataclass(frozen=True)
class AuthenticationSpec:
    type: str
    kafka_user_ref: Optional[str] = None
    certificate_and_key: Optional[CertificateAndKey] = None
    password_secret: Optional[SecretKeyRef] = None
    username: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional['AuthenticationSpec']:
        if data is None:
            return None
        where = 'spec.authentication'
        if not isinstance(data, dict):
            raise InvalidConfigError(f"{where} must be an object")
        auth_type = _require(data, 'type', where)
        if auth_type not in (AUTH_TLS, AUTH_SCRAM):
            raise InvalidConfigError(
                f"Unsupported authentication type: {auth_type}. "
                f"Supported types: {AUTH_TLS}, {AUTH_SCRAM}"
            )
        user_ref = data.get('kafkaUserRef') or {}
        cert = data.get('certificateAndKey')
        certificate_and_key = None
        if cert is not None:
            cert_where = f'{where}.certificateAndKey'
            certificate_and_key = CertificateAndKey(
                secret_name=_require(cert, 'secretName', cert_where),
                certificate=_require(cert, 'certificate', cert_where),
                key=_require(cert, 'key', cert_where),
            )
        return cls(
            type=auth_type,
            kafka_user_ref=user_ref.get('name'),
            certificate_and_key=certificate_and_key,
            password_secret=SecretKeyRef.from_dict(data.get('passwordSecret'), f'{where}.passwordSecret'),
            username=data.get('username'),
        )


# --- Storage variants ---

@dataclass(frozen=True)
class S3Storage:
    bucket: str
    region: Optional[str] = None
    prefix: Optional[str] = None
    endpoint: Optional[str] = None
    force_path_style: Optional[bool] = None
    credentials_secret: Optional[SecretKeyRef] = None


@dataclass(frozen=True)
class AzureStorage:
    container: str
    storage_account: str
    prefix: Optional[str] = None
    credentials_secret: Optional[SecretKeyRef] = None


@dataclass(frozen=True)
class GcsStorage:
    bucket: str
    prefix: Optional[str] = None
    credentials_secret: Optional[SecretKeyRef] = None


StorageSpec = Union[S3Storage, AzureStorage, GcsStorage]


def parse_storage(data: Any) -> StorageSpec:
    where = 'spec.storage'
    if not isinstance(data, dict):
        raise InvalidConfigError(f"{where} is required")
    storage_type = _require(data, 'type', where)
    section = data.get(storage_type)
    if storage_type not in ('s3', 'azure', 'gcs'):
        raise InvalidConfigError(
            f"Unsupported storage type: {storage_type}. Supported types: s3, azure, gcs"
        )
    if not isinstance(section, dict):
        raise InvalidConfigError(f"Storage type is {storage_type} but {storage_type} config is missing")

    where = f'{where}.{storage_type}'
    credentials = SecretKeyRef.from_dict(section.get('credentialsSecret'), f'{where}.credentialsSecret')
    if storage_type == 's3':
        return S3Storage(
            bucket=_require(section, 'bucket', where),
            region=section.get('region'),
            prefix=section.get('prefix'),
            endpoint=section.get('endpoint'),
            force_path_style=section.get('forcePathStyle'),
            credentials_secret=credentials,
        )
    if storage_type == 'azure':
        return AzureStorage(
            container=_require(section, 'container', where),
            storage_account=_require(section, 'storageAccount', where),
            prefix=section.get('prefix'),
            credentials_secret=credentials,
        )
    return GcsStorage(
        bucket=_require(section, 'bucket', where),
        prefix=section.get('prefix'),
        credentials_secret=credentials,
    )


# --- Backup spec ---

@dataclass(frozen=True)
class TopicSelection:
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Any, where: str) -> Optional['TopicSelection']:
        if data is None:
            return None
        return cls(
            include=_strings(data.get('include'), f'{where}.include'),
            exclude=_strings(data.get('exclude'), f'{where}.exclude'),
        )


@dataclass(frozen=True)
class BackupOptions:
    compression: Optional[str] = None
    segment_size: Optional[int] = None
    parallelism: Optional[int] = None


@dataclass(frozen=True)
class ScheduleSpec:
    cron: str
    timezone: Optional[str] = None
    suspend: bool = False


@dataclass(frozen=True)
class RetentionSpec:
    max_backups: Optional[int] = None
    max_age: Optional[str] = None
    prune_on_schedule: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> Optional['RetentionSpec']:
        if data is None:
            return None
        max_backups = _int(data.get('maxBackups'), 'spec.retention.maxBackups')
        if max_backups is not None and max_backups < 0:
            raise InvalidConfigError("spec.retention.maxBackups must not be negative")
        return cls(
            max_backups=max_backups,
            max_age=data.get('maxAge'),
            prune_on_schedule=bool(data.get('pruneOnSchedule', False)),
        )


@dataclass(frozen=True)
class BackupSpec:
    cluster_ref: ClusterRef
    storage: StorageSpec
    authentication: Optional[AuthenticationSpec] = None
    topics: Optional[TopicSelection] = None
    backup: Optional[BackupOptions] = None
    schedule: Optional[ScheduleSpec] = None
    retention: Optional[RetentionSpec] = None
    resources: Optional[Dict[str, Any]] = None
    template: Optional[Dict[str, Any]] = None
    image: Optional[str] = None

    @classmethod
    def from_dict(cls, spec: Mapping[str, Any]) -> 'BackupSpec':
        options = None
        if (raw := spec.get('backup')) is not None:
            options = BackupOptions(
                compression=raw.get('compression'),
                segment_size=_int(raw.get('segmentSize'), 'spec.backup.segmentSize'),
                parallelism=_int(raw.get('parallelism'), 'spec.backup.parallelism'),
            )

        schedule = None
        if (raw := spec.get('schedule')) is not None:
            schedule = ScheduleSpec(
                cron=_require(raw, 'cron', 'spec.schedule'),
                timezone=raw.get('timezone'),
                suspend=bool(raw.get('suspend', False)),
            )

        return cls(
            cluster_ref=ClusterRef.from_dict(spec.get('strimziClusterRef')),
            storage=parse_storage(spec.get('storage')),
            authentication=AuthenticationSpec.from_dict(spec.get('authentication')),
            topics=TopicSelection.from_dict(spec.get('topics'), 'spec.topics'),
            backup=options,
            schedule=schedule,
            retention=RetentionSpec.from_dict(spec.get('retention')),
            resources=spec.get('resources'),
            template=spec.get('template'),
            image=spec.get('image'),
        )


# --- Restore spec ---

@dataclass(frozen=True)
class BackupRef:
    name: str
    backup_id: Optional[str] = None


@dataclass(frozen=True)
class PointInTime:
    timestamp: Optional[str] = None
    offset_from_end: Optional[str] = None


@dataclass(frozen=True)
class RestoreOptions:
    parallelism: Optional[int] = None


@dataclass(frozen=True)
class ConsumerGroupRestore:
    restore: bool = False
    mapping: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class RestoreSpec:
    cluster_ref: ClusterRef
    backup_ref: BackupRef
    authentication: Optional[AuthenticationSpec] = None
    point_in_time: Optional[PointInTime] = None
    topic_mapping: Tuple[Tuple[str, str], ...] = ()
    consumer_groups: Optional[ConsumerGroupRestore] = None
    restore: Optional[RestoreOptions] = None
    resources: Optional[Dict[str, Any]] = None
    template: Optional[Dict[str, Any]] = None
    image: Optional[str] = None

    @classmethod
    def from_dict(cls, spec: Mapping[str, Any]) -> 'RestoreSpec':
        raw_ref = spec.get('backupRef')
        if not isinstance(raw_ref, dict):
            raise InvalidConfigError("spec.backupRef is required")
        backup_ref = BackupRef(
            name=_require(raw_ref, 'name', 'spec.backupRef'),
            backup_id=raw_ref.get('backupId'),
        )

        point_in_time = None
        if (raw := spec.get('pointInTime')) is not None:
            point_in_time = PointInTime(
                timestamp=raw.get('timestamp'),
                offset_from_end=raw.get('offsetFromEnd'),
            )

        topic_mapping = tuple(
            (_require(entry, 'sourceTopic', 'spec.topicMapping[]'),
             _require(entry, 'targetTopic', 'spec.topicMapping[]'))
            for entry in spec.get('topicMapping') or []
        )

        consumer_groups = None
        if (raw := spec.get('consumerGroups')) is not None:
            consumer_groups = ConsumerGroupRestore(
                restore=bool(raw.get('restore', False)),
                mapping=tuple(
                    (_require(entry, 'sourceGroup', 'spec.consumerGroups.mapping[]'),
                     _require(entry, 'targetGroup', 'spec.consumerGroups.mapping[]'))
                    for entry in raw.get('mapping') or []
                ),
            )

        options = None
        if (raw := spec.get('restore')) is not None:
            options = RestoreOptions(
                parallelism=_int(raw.get('parallelism'), 'spec.restore.parallelism'),
            )

        return cls(
            cluster_ref=ClusterRef.from_dict(spec.get('strimziClusterRef')),
            backup_ref=backup_ref,
            authentication=AuthenticationSpec.from_dict(spec.get('authentication')),
            point_in_time=point_in_time,
            topic_mapping=topic_mapping,
            consumer_groups=consumer_groups,
            restore=options,
            resources=spec.get('resources'),
            template=spec.get('template'),
            image=spec.get('image'),
        )


# --- Status records ---

@dataclass(frozen=True)
class BackupHistoryEntry:
    id: str
    status: str
    start_time: datetime
    completion_time: Optional[datetime] = None
    size_bytes: Optional[int] = None
    topics_backed_up: Optional[int] = None
    partitions_backed_up: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BackupHistoryEntry':
        return cls(
            id=data['id'],
            status=data.get('status', STATUS_COMPLETED),
            start_time=parse_time(data['startTime']),
            completion_time=_optional_time(data.get('completionTime')),
            size_bytes=data.get('sizeBytes'),
            topics_backed_up=data.get('topicsBackedUp'),
            partitions_backed_up=data.get('partitionsBackedUp'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'status': self.status,
            'startTime': format_time(self.start_time),
        }
        if self.completion_time is not None:
            data['completionTime'] = format_time(self.completion_time)
        if self.size_bytes is not None:
            data['sizeBytes'] = self.size_bytes
        if self.topics_backed_up is not None:
            data['topicsBackedUp'] = self.topics_backed_up
        if self.partitions_backed_up is not None:
            data['partitionsBackedUp'] = self.partitions_backed_up
        return data

    def to_last_backup(self) -> Dict[str, Any]:
        """The lastBackup summary shares the history entry's shape"""
        return self.to_dict()


@dataclass(frozen=True)
class RestoreInfo:
    status: str
    start_time: datetime
    completion_time: Optional[datetime] = None
    point_in_time_target: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'status': self.status,
            'startTime': format_time(self.start_time),
        }
        if self.completion_time is not None:
            data['completionTime'] = format_time(self.completion_time)
        if self.point_in_time_target is not None:
            data['pointInTimeTarget'] = format_time(self.point_in_time_target)
        return data


def history_from_status(status: Mapping[str, Any]) -> List[BackupHistoryEntry]:
    return [BackupHistoryEntry.from_dict(entry) for entry in status.get('backupHistory') or []]
