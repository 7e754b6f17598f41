"""
Status conditions following the Strimzi conventions

A resource's status carries an ordered list of conditions with at most one
entry per type. ``lastTransitionTime`` only moves when the status of a type
flips; refreshing reason or message keeps the original timestamp.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from kafka_backup_operator.models import format_time, parse_time, utcnow

# Condition types
CONDITION_READY = 'Ready'
CONDITION_BACKUP_COMPLETE = 'BackupComplete'
CONDITION_RESTORE_COMPLETE = 'RestoreComplete'
CONDITION_SCHEDULED = 'Scheduled'
CONDITION_ERROR = 'Error'

# Condition status values
STATUS_TRUE = 'True'
STATUS_FALSE = 'False'
STATUS_UNKNOWN = 'Unknown'

# Reasons
REASON_RECONCILED = 'Reconciled'
REASON_BACKUP_RUNNING = 'BackupRunning'
REASON_BACKUP_COMPLETED = 'BackupCompleted'
REASON_BACKUP_FAILED = 'BackupFailed'
REASON_BACKUP_SCHEDULED = 'BackupScheduled'
REASON_SCHEDULE_SUSPENDED = 'ScheduleSuspended'
REASON_RESTORE_RUNNING = 'RestoreRunning'
REASON_RESTORE_COMPLETED = 'RestoreCompleted'
REASON_RESTORE_FAILED = 'RestoreFailed'
REASON_NO_ERROR = 'NoError'


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Condition':
        transition = data.get('lastTransitionTime')
        return cls(
            type=data['type'],
            status=data.get('status', STATUS_UNKNOWN),
            reason=data.get('reason'),
            message=data.get('message'),
            last_transition_time=parse_time(transition) if transition else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'type': self.type, 'status': self.status}
        if self.reason is not None:
            data['reason'] = self.reason
        if self.message is not None:
            data['message'] = self.message
        if self.last_transition_time is not None:
            data['lastTransitionTime'] = format_time(self.last_transition_time)
        return data


def new_condition(
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: Optional[datetime] = None,
) -> Condition:
    return Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=now or utcnow(),
    )


def set_condition(conditions: List[Condition], new: Condition) -> None:
    """
    Set or update a condition in place

    An existing entry of the same type with an unchanged status only takes
    the new reason and message; a status change replaces it wholesale.
    Absent types are appended.
    """
    for index, existing in enumerate(conditions):
        if existing.type != new.type:
            continue
        if existing.status != new.status:
            conditions[index] = new
        else:
            conditions[index] = replace(existing, reason=new.reason, message=new.message)
        return
    conditions.append(new)


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def is_condition_true(conditions: List[Condition], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return condition is not None and condition.status == STATUS_TRUE


def ready(reason: str, message: str, now: Optional[datetime] = None) -> Condition:
    return new_condition(CONDITION_READY, STATUS_TRUE, reason, message, now)


def not_ready(reason: str, message: str, now: Optional[datetime] = None) -> Condition:
    return new_condition(CONDITION_READY, STATUS_FALSE, reason, message, now)


def error_conditions(reason: str, message: str, now: Optional[datetime] = None) -> List[Condition]:
    """Ready=False plus Error=True, both carrying the same reason"""
    return [
        not_ready(reason, message, now),
        new_condition(CONDITION_ERROR, STATUS_TRUE, reason, message, now),
    ]


def clear_error(now: Optional[datetime] = None) -> Condition:
    return new_condition(CONDITION_ERROR, STATUS_FALSE, REASON_NO_ERROR, 'No error', now)


def conditions_from_status(status: Mapping[str, Any]) -> List[Condition]:
    return [Condition.from_dict(c) for c in status.get('conditions') or []]


def conditions_to_status(conditions: List[Condition]) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in conditions]
