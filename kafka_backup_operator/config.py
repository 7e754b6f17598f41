"""
Configuration management for the Kafka Backup Operator
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional


@dataclass(frozen=True)
class ApiConfig:
    """Custom resource coordinates watched and referenced by the operator"""
    group: str = 'kafkabackup.com'
    version: str = 'v1alpha1'
    backup_plural: str = 'kafkabackups'
    restore_plural: str = 'kafkarestores'
    backup_kind: str = 'KafkaBackup'
    restore_kind: str = 'KafkaRestore'

    strimzi_group: str = 'kafka.strimzi.io'
    strimzi_version: str = 'v1beta2'
    kafka_plural: str = 'kafkas'
    kafka_user_plural: str = 'kafkausers'

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}'


@dataclass(frozen=True)
class JobConfig:
    """Defaults for backup/restore Jobs and CronJobs"""
    default_image: str = 'ghcr.io/osodevops/kafka-backup:latest'
    service_account: str = 'kafka-backup-operator'
    backoff_limit: int = 3
    successful_jobs_history_limit: int = 3
    failed_jobs_history_limit: int = 3


@dataclass(frozen=True)
class OperatorConfig:
    """Main operator configuration"""

    # Operator metadata
    name: str = 'kafka-backup-operator'
    version: str = '0.1.0'

    # None means watch all namespaces
    namespace: Optional[str] = None

    api: ApiConfig = field(default_factory=ApiConfig)
    job: JobConfig = field(default_factory=JobConfig)

    # Well-known metadata keys
    finalizer: str = 'kafkabackup.com/cleanup'
    trigger_annotation: str = 'kafkabackup.com/trigger'
    trigger_value: str = 'now'
    label_prefix: str = 'kafkabackup.com'
    part_of: str = 'kafka-backup'

    # Reconciliation scheduling
    requeue_after: float = 300.0
    retry_after: float = 30.0

    max_history_entries: int = 20

    # Logging
    log_level: str = 'INFO'

    # Metrics
    enable_metrics: bool = True
    metrics_port: int = 9090

    @classmethod
    def from_env(cls) -> 'OperatorConfig':
        """
        Create configuration from environment variables

        Environment variables:
        - OPERATOR_NAMESPACE: Namespace to watch (default: all)
        - LOG_LEVEL: Logging level (default: INFO)
        - ENABLE_METRICS: Serve Prometheus metrics (default: true)
        - METRICS_PORT: Port of the metrics endpoint (default: 9090)
        - DEFAULT_IMAGE: Image used when a resource has no override
        - JOB_SERVICE_ACCOUNT: Service account of backup/restore pods
        - MAX_HISTORY_ENTRIES: Bound of status.backupHistory (default: 20)
        """
        config = cls(
            namespace=os.getenv('OPERATOR_NAMESPACE') or None,
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            enable_metrics=os.getenv('ENABLE_METRICS', 'true').lower() == 'true',
        )

        job = config.job
        if image := os.getenv('DEFAULT_IMAGE'):
            job = replace(job, default_image=image)
        if account := os.getenv('JOB_SERVICE_ACCOUNT'):
            job = replace(job, service_account=account)
        config = replace(config, job=job)

        if port := os.getenv('METRICS_PORT'):
            try:
                config = replace(config, metrics_port=int(port))
            except ValueError:
                pass  # Use default if invalid

        if history := os.getenv('MAX_HISTORY_ENTRIES'):
            try:
                config = replace(config, max_history_entries=int(history))
            except ValueError:
                pass

        return config

    def validate(self) -> None:
        """
        Validate configuration

        Raises:
            ValueError: If configuration is invalid
        """
        if self.requeue_after <= 0 or self.retry_after <= 0:
            raise ValueError("Reconciliation intervals must be positive")

        if self.retry_after >= self.requeue_after:
            raise ValueError("Retry interval must be shorter than the requeue interval")

        if self.max_history_entries < 1:
            raise ValueError("History bound must be at least 1")

        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Unknown log level: {self.log_level}")

        if not 0 < self.metrics_port < 65536:
            raise ValueError(f"Invalid metrics port: {self.metrics_port}")

    def label(self, key: str) -> str:
        """Qualify a label or annotation key with the operator prefix"""
        return f'{self.label_prefix}/{key}'

    def image_for(self, override: Optional[str]) -> str:
        """Image for a backup/restore container"""
        return override or self.job.default_image


# Global configuration instance
_config: Optional[OperatorConfig] = None


def get_config() -> OperatorConfig:
    """
    Get the global configuration instance (singleton pattern)

    Returns:
        OperatorConfig: The global configuration
    """
    global _config
    if _config is None:
        config = OperatorConfig.from_env()
        config.validate()
        _config = config
    return _config


def set_config(config: OperatorConfig) -> None:
    """
    Set the global configuration instance

    Args:
        config: New configuration instance
    """
    global _config
    config.validate()
    _config = config
