"""
Retention policy enforcement for stored backups.

The keep window is computed over the merged listing of every tracked
database: the newest keep * len(databases) backups survive, whatever their
per-database distribution, and everything older is deleted.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from .catalog import ALL_DATABASES, Catalog
from .storage import BackupObject, StoreInconsistency

logger = logging.getLogger(__name__)


def eligible_for_deletion(backups: List[BackupObject], keep: int, database_count: int) -> List[BackupObject]:
    """
    Select the backups outside the keep window.

    Args:
        backups: Backups sorted oldest first
        keep: Backups to keep per tracked database
        database_count: Number of tracked databases

    A window of zero (keep: 0, or no tracked databases) deletes nothing
    rather than everything.

    Returns:
        Oldest backups beyond the newest keep * database_count entries
    """
    cutoff = keep * database_count
    if cutoff <= 0 or cutoff >= len(backups):
        return []
    return backups[:len(backups) - cutoff]


class RetentionManager:
    """
    Deletes old backups for one environment.
    """

    def __init__(self, catalog: Catalog, storage, keep: int):
        """
        Initialize retention manager.

        Args:
            catalog: Catalog of the environment being cleaned
            storage: Object store exposing delete(key)
            keep: Backups to keep per tracked database
        """
        self.catalog = catalog
        self.storage = storage
        self.keep = keep
        self.logs = []

    def cleanup(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Delete every backup outside the keep window.

        Objects the store reports as already gone are counted as skipped;
        any other storage error propagates.

        Args:
            dry_run: If True, only report what would be deleted

        Returns:
            Dict with summary of cleanup:
            {
                'eligible': int,
                'deleted': int,
                'skipped': int,
                'kept': int,
                'logs': List[str]
            }
        """
        backups = self.catalog.list(ALL_DATABASES)
        to_delete = eligible_for_deletion(backups, self.keep, len(self.catalog.databases))

        self._log(
            f"Retention: {len(backups)} backup(s), keeping {self.keep} x "
            f"{len(self.catalog.databases)} database(s), {len(to_delete)} to delete"
        )

        summary = {
            'eligible': len(to_delete),
            'deleted': 0,
            'skipped': 0,
            'kept': len(backups) - len(to_delete),
        }

        for backup in to_delete:
            if dry_run:
                self._log(f"would delete: {backup.key}")
                continue

            self._log(f"deleting: {backup.key}")
            try:
                self.storage.delete(backup.key)
                summary['deleted'] += 1
            except StoreInconsistency as e:
                # listing and delete raced against the store's consistency window
                self._log(f"skipped: {e}")
                summary['skipped'] += 1

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
