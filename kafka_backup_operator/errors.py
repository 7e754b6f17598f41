"""
Error taxonomy of the operator

Every error carries a machine-readable ``reason`` that ends up in the
``reason`` field of the Ready/Error status conditions.
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for errors surfaced on a resource's status"""
    reason = 'OperatorError'


class KubernetesApiError(OperatorError):
    """Transport or API failure talking to the Kubernetes API server"""
    reason = 'KubernetesError'

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def conflict(self) -> bool:
        return self.status == 409


class ClusterNotFoundError(OperatorError):
    reason = 'ClusterNotFound'

    def __init__(self, name: str, namespace: str):
        super().__init__(f"Strimzi cluster '{name}' not found in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class SecretNotFoundError(OperatorError):
    reason = 'SecretNotFound'

    def __init__(self, name: str, namespace: str):
        super().__init__(f"Secret '{name}' not found in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class SecretKeyMissingError(OperatorError):
    reason = 'SecretKeyMissing'

    def __init__(self, name: str, key: str):
        super().__init__(f"Secret '{name}' missing key '{key}'")
        self.name = name
        self.key = key


class KafkaUserNotFoundError(OperatorError):
    reason = 'KafkaUserNotFound'

    def __init__(self, name: str, namespace: str):
        super().__init__(f"KafkaUser '{name}' not found in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class InvalidConfigError(OperatorError):
    reason = 'InvalidConfiguration'

    def __str__(self) -> str:
        return f"Invalid configuration: {super().__str__()}"


class BackupNotFoundError(OperatorError):
    reason = 'BackupNotFound'

    def __init__(self, name: str):
        super().__init__(f"Backup '{name}' not found")
        self.name = name


class JobCreationError(OperatorError):
    reason = 'JobCreationFailed'

    def __str__(self) -> str:
        return f"Job creation failed: {super().__str__()}"


class FinalizerError(OperatorError):
    reason = 'FinalizerError'


class SerializationError(OperatorError):
    reason = 'SerializationError'


class MissingObjectKeyError(OperatorError):
    reason = 'MissingObjectKey'

    def __init__(self, key: str):
        super().__init__(f"Missing object key: {key}")
        self.key = key
