"""
Resolution of Strimzi-managed state referenced by backups and restores

Every reconciliation pass resolves these afresh; nothing here is cached.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from kafka_backup_operator.config import get_config
from kafka_backup_operator.errors import (
    ClusterNotFoundError,
    InvalidConfigError,
    KafkaUserNotFoundError,
    KubernetesApiError,
    SecretKeyMissingError,
    SecretNotFoundError,
)
from kafka_backup_operator.models import AUTH_SCRAM, AUTH_TLS, AuthenticationSpec, ClusterRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedKafkaCluster:
    name: str
    namespace: str
    bootstrap_servers: str
    replicas: int
    tls_enabled: bool
    listener_name: str


@dataclass(frozen=True)
class ResolvedTlsCerts:
    cluster_ca_cert: str
    client_ca_cert: Optional[str] = None

    @property
    def has_client_ca(self) -> bool:
        return self.client_ca_cert is not None


@dataclass(frozen=True)
class TlsAuth:
    """Client certificate authentication"""
    secret_name: str
    certificate_key: str = 'user.crt'
    private_key_key: str = 'user.key'


@dataclass(frozen=True)
class ScramAuth:
    """SCRAM-SHA-512 authentication"""
    username: str
    secret_name: str
    password_key: str = 'password'


@dataclass(frozen=True)
class NoAuth:
    pass


ResolvedAuth = Union[TlsAuth, ScramAuth, NoAuth]


def cluster_ca_secret_name(cluster_name: str) -> str:
    return f'{cluster_name}-cluster-ca-cert'


def clients_ca_secret_name(cluster_name: str) -> str:
    return f'{cluster_name}-clients-ca-cert'


# --- Secrets ---

def get_secret(kube, namespace: str, name: str) -> Dict[str, str]:
    try:
        return kube.get_secret(namespace, name)
    except KubernetesApiError as e:
        if e.not_found:
            raise SecretNotFoundError(name, namespace) from e
        raise


def extract_secret_string(data: Mapping[str, str], secret_name: str, key: str) -> str:
    """Decode a key of a Secret's base64 data"""
    encoded = data.get(key)
    if encoded is None:
        raise SecretKeyMissingError(secret_name, key)
    try:
        return base64.b64decode(encoded).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError) as e:
        raise SecretKeyMissingError(secret_name, key) from e


def require_secret_key(kube, namespace: str, name: str, key: str) -> None:
    if key not in get_secret(kube, namespace, name):
        raise SecretKeyMissingError(name, key)


# --- Kafka cluster ---

def _select_listener(kafka: Mapping[str, Any]) -> Tuple[bool, str]:
    listeners = ((kafka.get('spec') or {}).get('kafka') or {}).get('listeners') or []
    for listener in listeners:
        if listener.get('tls') is True:
            return True, listener.get('name', 'tls')
    if listeners:
        first = listeners[0]
        return bool(first.get('tls', False)), first.get('name', 'plain')
    return True, 'tls'


def _bootstrap_servers(kafka: Mapping[str, Any], listener_name: str) -> Optional[str]:
    listeners = (kafka.get('status') or {}).get('listeners') or []
    by_name = {
        listener.get('name'): listener.get('bootstrapServers')
        for listener in listeners
        if listener.get('bootstrapServers')
    }
    for preferred in (listener_name, 'tls', 'plain'):
        if preferred in by_name:
            return by_name[preferred]
    return next(iter(by_name.values()), None)


def resolve_kafka_cluster(kube, cluster_ref: ClusterRef, default_namespace: str) -> ResolvedKafkaCluster:
    """Look up a Strimzi Kafka resource and derive its connection details"""
    config = get_config()
    namespace = cluster_ref.namespace or default_namespace
    name = cluster_ref.name
    logger.info("Resolving Strimzi Kafka cluster %s/%s", namespace, name)

    try:
        kafka = kube.get_custom_object(
            config.api.kafka_plural, namespace, name,
            group=config.api.strimzi_group, version=config.api.strimzi_version,
        )
    except KubernetesApiError as e:
        if e.not_found:
            raise ClusterNotFoundError(name, namespace) from e
        raise

    tls_enabled, listener_name = _select_listener(kafka)
    bootstrap = _bootstrap_servers(kafka, listener_name)
    if bootstrap is None:
        port = 9093 if tls_enabled else 9092
        bootstrap = f'{name}-kafka-bootstrap.{namespace}.svc:{port}'

    replicas = ((kafka.get('spec') or {}).get('kafka') or {}).get('replicas', 3)

    resolved = ResolvedKafkaCluster(
        name=name,
        namespace=namespace,
        bootstrap_servers=bootstrap,
        replicas=replicas,
        tls_enabled=tls_enabled,
        listener_name=listener_name,
    )
    logger.debug("Resolved Kafka cluster %s", resolved)
    return resolved


def resolve_cluster_ca(kube, cluster: ResolvedKafkaCluster) -> ResolvedTlsCerts:
    """Read the cluster CA (required) and clients CA (optional) certificates"""
    secret_name = cluster_ca_secret_name(cluster.name)
    data = get_secret(kube, cluster.namespace, secret_name)
    cluster_ca = extract_secret_string(data, secret_name, 'ca.crt')

    client_ca = None
    clients_name = clients_ca_secret_name(cluster.name)
    try:
        client_data = get_secret(kube, cluster.namespace, clients_name)
        client_ca = extract_secret_string(client_data, clients_name, 'ca.crt')
    except (SecretNotFoundError, SecretKeyMissingError):
        logger.debug("Clients CA secret %s not available (optional)", clients_name)

    return ResolvedTlsCerts(cluster_ca_cert=cluster_ca, client_ca_cert=client_ca)


# --- Authentication ---

def _kafka_user_secret(kube, user_name: str, namespace: str) -> str:
    """Name of the secret the Strimzi User Operator created for a KafkaUser"""
    config = get_config()
    logger.info("Resolving KafkaUser %s/%s", namespace, user_name)
    try:
        user = kube.get_custom_object(
            config.api.kafka_user_plural, namespace, user_name,
            group=config.api.strimzi_group, version=config.api.strimzi_version,
        )
    except KubernetesApiError as e:
        if e.not_found:
            raise KafkaUserNotFoundError(user_name, namespace) from e
        raise

    secret = (user.get('status') or {}).get('secret')
    if secret:
        return secret
    logger.debug("Using conventional secret name for KafkaUser %s", user_name)
    return user_name


def resolve_auth(kube, auth: Optional[AuthenticationSpec], namespace: str) -> ResolvedAuth:
    """
    Resolve authentication settings to the credentials the Job will mount

    Raises:
        InvalidConfigError: If the authentication block is incomplete
        KafkaUserNotFoundError: If a referenced KafkaUser does not exist
        SecretNotFoundError, SecretKeyMissingError: If credentials are absent
    """
    if auth is None:
        return NoAuth()

    if auth.type == AUTH_TLS:
        if auth.kafka_user_ref:
            resolved = TlsAuth(secret_name=_kafka_user_secret(kube, auth.kafka_user_ref, namespace))
            logger.info("Resolved TLS credentials from KafkaUser secret %s", resolved.secret_name)
        elif auth.certificate_and_key is not None:
            cert = auth.certificate_and_key
            resolved = TlsAuth(
                secret_name=cert.secret_name,
                certificate_key=cert.certificate,
                private_key_key=cert.key,
            )
        else:
            raise InvalidConfigError("TLS authentication requires either kafkaUserRef or certificateAndKey")
        require_secret_key(kube, namespace, resolved.secret_name, resolved.certificate_key)
        require_secret_key(kube, namespace, resolved.secret_name, resolved.private_key_key)
        return resolved

    if auth.type == AUTH_SCRAM:
        if auth.kafka_user_ref:
            resolved = ScramAuth(
                username=auth.kafka_user_ref,
                secret_name=_kafka_user_secret(kube, auth.kafka_user_ref, namespace),
            )
            logger.info("Resolved SCRAM credentials from KafkaUser secret %s", resolved.secret_name)
        else:
            if not auth.username:
                raise InvalidConfigError("SCRAM authentication requires username")
            if auth.password_secret is None:
                raise InvalidConfigError("SCRAM authentication requires either kafkaUserRef or passwordSecret")
            resolved = ScramAuth(
                username=auth.username,
                secret_name=auth.password_secret.name,
                password_key=auth.password_secret.key,
            )
        require_secret_key(kube, namespace, resolved.secret_name, resolved.password_key)
        return resolved

    raise InvalidConfigError(f"Unsupported authentication type: {auth.type}")
