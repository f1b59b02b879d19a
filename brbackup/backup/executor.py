"""
Backup executor - orchestrates the backup lifecycle for one environment.

Operations:
1. backup_all: dump every tracked database and upload it under a shared timestamp
2. list_backups: show stored backups, oldest first
3. download: resolve an index:database token and fetch the backup
4. restore: download, then load the dump back into the same database
5. clone: fetch the newest backup and load it into the staging database
6. cleanup: delete backups outside the retention window
"""

import logging
import os
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from brbackup.config import BackupSettings, default_settings_path, load_backup_settings
from brbackup.errors import ConfigurationMissing
from .catalog import ALL_DATABASES, Catalog
from .engines import DatabaseEngine, create_engine
from .naming import artifact_filename, artifact_key, backup_timestamp, staging_name_from_filename
from .resolver import Resolver, parse_token
from .retention import RetentionManager
from .storage import BackupObject, S3Storage
from .transfer import download_backup

logger = logging.getLogger(__name__)

# backup_all and cleanup both read the catalog and then act on it
_environment_locks = defaultdict(threading.Lock)
_locks_guard = threading.Lock()


def _environment_lock(environment: str) -> threading.Lock:
    with _locks_guard:
        return _environment_locks[environment]


class Backups:
    """
    Orchestrates backup, listing, download, restore, clone and cleanup.
    """

    def __init__(self, settings: BackupSettings, storage, engine: DatabaseEngine, environment: str,
                 temp_dir: str, download_dir: Optional[str] = None):
        """
        Initialize backup executor.

        Args:
            settings: Loaded backup settings (databases, keep, acl)
            storage: Object store (S3Storage or compatible)
            engine: Database engine adapter
            environment: Environment whose backups are handled
            temp_dir: Directory for staging dumps before upload
            download_dir: Directory for downloads (default: working directory)
        """
        if not environment:
            raise ConfigurationMissing("No environment given: pass --from or set 'env' in the backup settings")

        self.settings = settings
        self.storage = storage
        self.engine = engine
        self.environment = environment
        self.temp_dir = temp_dir
        self.download_dir = download_dir
        self.catalog = Catalog(storage, environment, settings.databases)
        self.resolver = Resolver(self.catalog)
        self.logs = []

    @property
    def databases(self) -> List[str]:
        return self.settings.databases

    def backup_all(self) -> List[str]:
        """
        Dump and upload every tracked database.

        All artifacts of one run share a single timestamp.

        Returns:
            Uploaded keys, in database order
        """
        with _environment_lock(self.environment):
            timestamp = backup_timestamp()
            self.storage.ensure_bucket()
            os.makedirs(self.temp_dir, exist_ok=True)

            keys = []
            for database in self.databases:
                keys.append(self.backup_database(database, timestamp))
            return keys

    def backup_database(self, database: str, timestamp: str) -> str:
        """
        Dump one database into the temp directory and upload it.

        The temp file is removed afterwards; a failed dump is never uploaded.

        Returns:
            Key of the uploaded backup
        """
        filename = artifact_filename(database, timestamp)
        local_path = os.path.join(self.temp_dir, filename)

        try:
            with open(local_path, 'wb') as f:
                self._log(f"doing database: {database}")
                self.engine.dump(database, f)

            key = artifact_key(self.environment, database, timestamp)
            self.storage.upload(local_path, key, acl=self.settings.acl)
            self._log(f"successful backup: {filename}")
            return key
        finally:
            if os.path.exists(local_path):
                os.remove(local_path)

    def list_backups(self, database: str = ALL_DATABASES,
                     printer: Optional[Callable[[str], None]] = None) -> List[BackupObject]:
        """List backups for one database or 'all', oldest first."""
        return self.catalog.list(database, printer)

    def download(self, token: str, progress: Optional[Callable[[int], None]] = None) -> Tuple[str, str]:
        """
        Download the backup a token refers to.

        Args:
            token: "{index}:{database}" as shown by list_backups
            progress: Optional per-chunk callback

        Returns:
            Tuple of (database, local path)
        """
        backup = self.resolver.resolve(token)
        _, database = parse_token(token)
        return download_backup(self.storage, backup, database, self.download_dir, progress)

    def restore(self, token: str, progress: Optional[Callable[[int], None]] = None) -> str:
        """
        Download a backup and load it over the database it came from.

        Returns:
            Name of the restored database
        """
        database, filename = self.download(token, progress)
        self._log(f"restoring {filename} into {database}")
        with open(filename, 'rb') as f:
            self.engine.restore(database, f)
        self._log(f"restored: {database}")
        return database

    def clone(self, database: str, progress: Optional[Callable[[int], None]] = None) -> str:
        """
        Load the newest backup of a database into its staging counterpart.

        The target name comes from the backup filename with '_production'
        swapped for '_staging'.

        Returns:
            Name of the database that received the clone
        """
        token = self.resolver.resolve_most_recent(database)
        _, filename = self.download(token, progress)
        target = staging_name_from_filename(os.path.basename(filename))

        self._log(f"cloning {os.path.basename(filename)} into {target}")
        with open(filename, 'rb') as f:
            self.engine.clone(target, f)
        self._log(f"cloned: {target}")
        return target

    def cleanup(self, dry_run: bool = False) -> Dict[str, Any]:
        """Delete backups outside the retention window."""
        with _environment_lock(self.environment):
            manager = RetentionManager(self.catalog, self.storage, self.settings.keep)
            summary = manager.cleanup(dry_run=dry_run)
            self.logs.extend(manager.logs)
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


def create_backups(app_config, environment: Optional[str] = None, settings_path: Optional[str] = None,
                   engine_name: Optional[str] = None, engines: Optional[Dict[str, type]] = None) -> Backups:
    """
    Build a Backups executor from application configuration.

    The settings file is read before any client is created, so missing
    configuration fails without touching the network.

    Args:
        app_config: Flask app config mapping
        environment: Environment override (default: settings 'env')
        settings_path: Settings file override (default: BACKUP_CONFIG or /etc/.{engine}.backups.yml)
        engine_name: Engine override (default: BACKUP_ENGINE)
        engines: Engine name to class mapping (default: build_engine_registry())

    Returns:
        Backups instance

    Raises:
        ConfigurationMissing: If settings or environment are missing
    """
    engine_name = engine_name or app_config.get('BACKUP_ENGINE', 'mysql')
    settings_path = settings_path or app_config.get('BACKUP_CONFIG') or default_settings_path(engine_name)

    settings = load_backup_settings(settings_path)
    engine = create_engine(engine_name, settings, engines)

    environment = environment or settings.env
    if not environment:
        raise ConfigurationMissing("No environment given: pass --from or set 'env' in the backup settings")

    storage = S3Storage(
        access_key=settings.aws_secret_id,
        secret_key=settings.aws_secret_key,
        bucket_name=settings.bucket_name,
        region=settings.region,
        endpoint_url=settings.endpoint_url,
        max_attempts=app_config.get('S3_MAX_ATTEMPTS', 5)
    )

    return Backups(
        settings=settings,
        storage=storage,
        engine=engine,
        environment=environment,
        temp_dir=app_config.get('TEMP_DIR', '/mnt/tmp'),
        download_dir=app_config.get('DOWNLOAD_DIR')
    )
