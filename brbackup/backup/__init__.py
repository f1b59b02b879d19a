"""
Backup module for brbackup.

This module handles the backup lifecycle:
- Naming of dump artifacts
- Catalog listing and ordering
- Token resolution
- Download transfer
- Retention policy enforcement
- Execution orchestration
"""

from .executor import Backups, create_backups
from .catalog import Catalog
from .resolver import Resolver, MalformedToken, BackupNotFound
from .storage import S3Storage, BackupObject, StorageError, StoreInconsistency, TransferFailed
from .retention import RetentionManager
from .engines import MysqlEngine, PostgresEngine, EngineFailure, build_engine_registry, create_engine

__all__ = [
    'Backups',
    'create_backups',
    'Catalog',
    'Resolver',
    'MalformedToken',
    'BackupNotFound',
    'S3Storage',
    'BackupObject',
    'StorageError',
    'StoreInconsistency',
    'TransferFailed',
    'RetentionManager',
    'MysqlEngine',
    'PostgresEngine',
    'EngineFailure',
    'build_engine_registry',
    'create_engine'
]
