"""
Retention policy enforcement for backups.

partition() decides which backups to keep; RetentionManager applies that
decision against a storage backend. A backup is kept when it is among the
newest ``keep_last`` backups or newer than ``keep_duration``. With neither
rule configured every backup is deleted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from redis_vault.metrics import Metrics
from .storage import BackupRecord, StorageBackend, StorageError


logger = logging.getLogger(__name__)


@dataclass
class Partition:
    """Backups sorted newest first, split into kept and deleted indices."""
    records: List[BackupRecord]
    keep: Set[int] = field(default_factory=set)
    delete: Set[int] = field(default_factory=set)

    @property
    def kept(self) -> List[BackupRecord]:
        return [record for i, record in enumerate(self.records) if i in self.keep]

    @property
    def to_delete(self) -> List[BackupRecord]:
        return [record for i, record in enumerate(self.records) if i in self.delete]


def partition(records: List[BackupRecord], keep_last: int, keep_duration: Optional[timedelta],
              now: datetime) -> Partition:
    """
    Split backups into the ones to keep and the ones to delete.

    Args:
        records: Backups as listed by the storage backend, in any order
        keep_last: Number of newest backups to keep
        keep_duration: Keep backups newer than now - keep_duration (optional)
        now: Reference time

    Returns:
        Partition over the records sorted newest first. Ties keep the
        backend's listing order.
    """
    ordered = sorted(records, key=lambda record: record.timestamp, reverse=True)

    keep = set(range(min(max(keep_last, 0), len(ordered))))

    if keep_duration:
        cutoff = now - keep_duration
        keep.update(i for i, record in enumerate(ordered) if record.timestamp > cutoff)

    delete = set(range(len(ordered))) - keep

    return Partition(records=ordered, keep=keep, delete=delete)


class RetentionManager:
    """
    Deletes backups of one node that fall outside the retention window.
    """

    def __init__(self, storage: StorageBackend, metrics: Metrics, keep_last: int,
                 keep_duration: Optional[timedelta] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize retention manager.

        Args:
            storage: Backend holding the backups
            metrics: Metrics sink
            keep_last: Number of newest backups to keep
            keep_duration: Keep backups newer than this
            clock: Returns the current UTC time (for tests)
        """
        self.storage = storage
        self.metrics = metrics
        self.keep_last = keep_last
        self.keep_duration = keep_duration
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def cleanup(self, prefix: str) -> int:
        """
        Delete old backups under prefix.

        Each deletion is attempted independently: one failing delete is
        logged and counted, the remaining candidates are still processed.

        Args:
            prefix: Key prefix selecting this node's backups

        Returns:
            Number of backups deleted

        Raises:
            StorageError: If the backups cannot be listed
        """
        self.metrics.cleanup_operations_total.inc()

        records = self.storage.list(prefix)
        plan = partition(records, self.keep_last, self.keep_duration, self.clock())

        logger.debug(
            f"Retention for {prefix}: {len(plan.records)} backups, "
            f"keeping {len(plan.keep)}, deleting {len(plan.delete)}"
        )

        deleted_count = 0
        for record in plan.to_delete:
            logger.info(f"Deleting old backup: {record.key}")

            self.metrics.storage_deletes_total.inc()
            try:
                self.storage.delete(record.key)
            except StorageError as e:
                logger.error(f"Failed to delete backup {record.key} from {e.backend or 'storage'}: {e}")
                self.metrics.storage_delete_failures_total.inc()
                continue

            deleted_count += 1
            self.metrics.backups_deleted_total.inc()

        if deleted_count:
            logger.info(f"Deleted {deleted_count} old backups under {prefix}")

        return deleted_count
