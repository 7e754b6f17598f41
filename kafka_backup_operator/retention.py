"""
Retention policy evaluation for backup history
"""

import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional, Set

from kafka_backup_operator.models import BackupHistoryEntry, RetentionSpec, utcnow

logger = logging.getLogger(__name__)

_DURATION = re.compile(r'^(\d+)([smhdw])$')

_UNITS = {
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
    'w': timedelta(weeks=1),
}


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """
    Parse a duration string like "30d", "720h" or "4w"

    Returns None when the value is empty or not an integer followed by one
    of the units s, m, h, d, w.
    """
    if not value:
        return None
    match = _DURATION.match(value.strip())
    if match is None:
        return None
    amount, unit = match.groups()
    return int(amount) * _UNITS[unit]


def evaluate_retention(
    history: List[BackupHistoryEntry],
    policy: RetentionSpec,
    now: Optional[datetime] = None,
) -> Set[str]:
    """
    Select the ids of history entries that should be pruned

    The count rule keeps the newest ``max_backups`` entries by start time.
    The age rule prunes entries that started strictly before
    ``now - max_age``; an entry exactly at the cutoff is kept. Both rules
    apply together and their selections are merged.
    """
    to_prune: Set[str] = set()
    if not history:
        return to_prune

    newest_first = sorted(history, key=lambda entry: entry.start_time, reverse=True)

    if policy.max_backups is not None and len(newest_first) > policy.max_backups:
        for entry in newest_first[policy.max_backups:]:
            logger.info("Marking backup %s for pruning (exceeds maxBackups)", entry.id)
            to_prune.add(entry.id)

    if policy.max_age is not None:
        max_age = parse_duration(policy.max_age)
        if max_age is None:
            logger.warning("Failed to parse maxAge duration %r, skipping age rule", policy.max_age)
        else:
            cutoff = (now or utcnow()) - max_age
            for entry in newest_first:
                if entry.start_time < cutoff and entry.id not in to_prune:
                    logger.info(
                        "Marking backup %s for pruning (started %s, exceeds maxAge)",
                        entry.id, entry.start_time.isoformat(),
                    )
                    to_prune.add(entry.id)

    return to_prune
