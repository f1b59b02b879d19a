"""
Listing and ordering of stored backups.
"""

from typing import Callable, List, Optional

from .naming import backup_prefix, local_filename
from .storage import BackupObject, backup_sort_key

ALL_DATABASES = 'all'


class Catalog:
    """
    Lists backups for one environment, oldest first.

    Positions in a single-database listing are the indices users pass as
    "{index}:{database}" tokens. Positions in an 'all' listing are for
    display and retention only.
    """

    def __init__(self, storage, environment: str, databases: List[str]):
        self.storage = storage
        self.environment = environment
        self.databases = list(databases)

    def list(self, database: str = ALL_DATABASES,
             printer: Optional[Callable[[str], None]] = None) -> List[BackupObject]:
        """
        List backups sorted ascending by last-modified time.

        Args:
            database: Database name, or 'all' for every tracked database
                merged into one sequence
            printer: Optional line printer; when given, a count and one
                "{index}:{database} {filename}" line per backup are emitted

        Returns:
            Sorted list of BackupObject
        """
        if printer:
            printer(f"Listing database backups for {database}")

        if database == ALL_DATABASES:
            # a tracked name that prefixes another (app, app_archive) lists the longer one's keys too
            by_key = {}
            for db in self.databases:
                for backup in self.storage.list_objects(backup_prefix(self.environment, db)):
                    by_key[backup.key] = backup
            backups = list(by_key.values())
        else:
            backups = self.storage.list_objects(backup_prefix(self.environment, database))

        backups = sorted(backups, key=backup_sort_key)

        if printer:
            printer(f"{len(backups)} backup(s) found")
            for index, backup in enumerate(backups):
                printer(f"{index}:{database} {local_filename(backup.key)}")

        return backups
