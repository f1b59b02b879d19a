"""
Unit tests for retention policy management (brbackup/backup/retention.py).

Tests RetentionManager for cleaning up old backups.
"""

import pytest

from brbackup.backup.catalog import Catalog
from brbackup.backup.retention import RetentionManager, eligible_for_deletion
from brbackup.backup.storage import StorageError
from brbackup.config import parse_backup_settings


@pytest.fixture
def six_backups(fake_storage, at):
    """
    Six backups over two databases, unevenly distributed.

    a has four backups (t0, t1, t2, t5), b has two (t3, t4).
    """
    fake_storage.add('prod_br.a/a.0.sql.gz', at(0))
    fake_storage.add('prod_br.a/a.1.sql.gz', at(1))
    fake_storage.add('prod_br.a/a.2.sql.gz', at(2))
    fake_storage.add('prod_br.b/b.3.sql.gz', at(3))
    fake_storage.add('prod_br.b/b.4.sql.gz', at(4))
    fake_storage.add('prod_br.a/a.5.sql.gz', at(5))
    return fake_storage


class TestEligibleForDeletion:
    """Test the keep window arithmetic."""

    def test_trims_oldest(self):
        assert eligible_for_deletion([1, 2, 3, 4, 5, 6], keep=2, database_count=2) == [1, 2]

    def test_cutoff_equal_to_length(self):
        assert eligible_for_deletion([1, 2, 3, 4], keep=2, database_count=2) == []

    def test_cutoff_beyond_length(self):
        assert eligible_for_deletion([1, 2], keep=5, database_count=3) == []

    def test_keep_zero_deletes_nothing(self):
        """A zero window never empties the environment."""
        assert eligible_for_deletion([1, 2, 3], keep=0, database_count=2) == []

    def test_no_databases_deletes_nothing(self):
        assert eligible_for_deletion([1, 2, 3], keep=2, database_count=0) == []

    def test_empty(self):
        assert eligible_for_deletion([], keep=1, database_count=1) == []


class TestRetentionManager:
    """Test RetentionManager basic functionality."""

    def test_retention_manager_initialization(self, fake_storage):
        """Test RetentionManager initializes correctly."""
        manager = RetentionManager(Catalog(fake_storage, 'prod_br', ['a']), fake_storage, keep=3)

        assert manager.keep == 3
        assert manager.logs == []

    def test_cross_database_window(self, six_backups):
        """keep=2 with two databases keeps the newest four of the merged listing."""
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])
        summary = RetentionManager(catalog, six_backups, keep=2).cleanup()

        assert six_backups.deleted == ['prod_br.a/a.0.sql.gz', 'prod_br.a/a.1.sql.gz']
        assert summary['deleted'] == 2
        assert summary['kept'] == 4
        assert sorted(six_backups.objects) == [
            'prod_br.a/a.2.sql.gz',
            'prod_br.a/a.5.sql.gz',
            'prod_br.b/b.3.sql.gz',
            'prod_br.b/b.4.sql.gz',
        ]

    def test_can_evict_all_of_one_database(self, fake_storage, at):
        """A frequently backed up database can push another out entirely."""
        fake_storage.add('prod_br.b/b.old.sql.gz', at(0))
        for minute in range(1, 5):
            fake_storage.add(f"prod_br.a/a.{minute}.sql.gz", at(minute))

        catalog = Catalog(fake_storage, 'prod_br', ['a', 'b'])
        RetentionManager(catalog, fake_storage, keep=2).cleanup()

        assert fake_storage.deleted == ['prod_br.b/b.old.sql.gz']
        assert catalog.list('b') == []

    def test_overlapping_names_counted_once(self, fake_storage, at):
        """Backups matched by two tracked prefixes use one slot of the window."""
        fake_storage.add('prod_br.app/app.0.sql.gz', at(0))
        fake_storage.add('prod_br.app_archive/app_archive.1.sql.gz', at(1))
        fake_storage.add('prod_br.app/app.2.sql.gz', at(2))
        fake_storage.add('prod_br.app_archive/app_archive.3.sql.gz', at(3))
        catalog = Catalog(fake_storage, 'prod_br', ['app', 'app_archive'])

        summary = RetentionManager(catalog, fake_storage, keep=1).cleanup()

        assert fake_storage.deleted == ['prod_br.app/app.0.sql.gz', 'prod_br.app_archive/app_archive.1.sql.gz']
        assert summary['kept'] == 2

    def test_only_tracked_databases_considered(self, six_backups, at):
        """Backups of untracked databases are never deleted."""
        six_backups.add('prod_br.other/other.old.sql.gz', at(-10))
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])

        RetentionManager(catalog, six_backups, keep=2).cleanup()

        assert 'prod_br.other/other.old.sql.gz' in six_backups.objects

    def test_nothing_to_delete(self, six_backups):
        """A window larger than the catalog deletes nothing."""
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])
        summary = RetentionManager(catalog, six_backups, keep=3).cleanup()

        assert six_backups.deleted == []
        assert summary['eligible'] == 0
        assert summary['kept'] == 6

    def test_keep_zero_from_settings_keeps_everything(self, six_backups):
        """keep: 0 in the settings file leaves every backup in place."""
        settings = parse_backup_settings({
            'aws_secret_id': 'id',
            'aws_secret_key': 'key',
            'databases': ['a', 'b'],
            'keep': 0,
        })
        catalog = Catalog(six_backups, 'prod_br', settings.databases)

        summary = RetentionManager(catalog, six_backups, keep=settings.keep).cleanup()

        assert summary['deleted'] == 0
        assert summary['kept'] == 6
        assert six_backups.deleted == []
        assert len(six_backups.objects) == 6

    def test_dry_run(self, six_backups):
        """Dry run reports without deleting."""
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])
        summary = RetentionManager(catalog, six_backups, keep=2).cleanup(dry_run=True)

        assert six_backups.deleted == []
        assert summary['eligible'] == 2
        assert any('would delete: prod_br.a/a.0.sql.gz' in line for line in summary['logs'])

    def test_store_inconsistency_swallowed(self, six_backups):
        """An object already gone counts as skipped and cleanup continues."""
        six_backups.missing_on_delete.add('prod_br.a/a.0.sql.gz')
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])

        summary = RetentionManager(catalog, six_backups, keep=2).cleanup()

        assert summary['skipped'] == 1
        assert summary['deleted'] == 1
        assert six_backups.deleted == ['prod_br.a/a.1.sql.gz']

    def test_other_storage_errors_propagate(self, six_backups):
        """Anything but an inconsistency aborts cleanup."""
        def failing_delete(key):
            raise StorageError("S3 delete failed (AccessDenied)")

        six_backups.delete = failing_delete
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])

        with pytest.raises(StorageError):
            RetentionManager(catalog, six_backups, keep=2).cleanup()

    def test_deletions_logged(self, six_backups):
        """Each deletion is logged with a timestamp."""
        catalog = Catalog(six_backups, 'prod_br', ['a', 'b'])
        summary = RetentionManager(catalog, six_backups, keep=2).cleanup()

        deleting = [line for line in summary['logs'] if 'deleting:' in line]
        assert len(deleting) == 2
        assert all(line.startswith('[') for line in deleting)
