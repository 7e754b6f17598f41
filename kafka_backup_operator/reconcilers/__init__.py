from kafka_backup_operator.reconcilers.backup import reconcile_backup
from kafka_backup_operator.reconcilers.restore import reconcile_restore

__all__ = ['reconcile_backup', 'reconcile_restore']
