"""
Kafka Backup Operator for Kubernetes

This operator reconciles KafkaBackup and KafkaRestore custom resources
against Strimzi-managed Kafka clusters. It renders the configuration of the
kafka-backup executable into ConfigMaps and runs it through Jobs and
CronJobs, reporting progress as Strimzi-style status conditions.

Run it with ``kopf run -m kafka_backup_operator.handlers --all-namespaces``.
"""

__version__ = "0.1.0"

from kafka_backup_operator.config import OperatorConfig
from kafka_backup_operator.reconcilers import reconcile_backup, reconcile_restore
from kafka_backup_operator.templates import ManifestTemplates

__all__ = [
    'ManifestTemplates',
    'OperatorConfig',
    'reconcile_backup',
    'reconcile_restore',
]
