import hashlib
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from brbackup.errors import ConfigurationMissing


class Config:
    """Base configuration"""

    # Engine and backup settings file (/etc/.{engine}.backups.yml when unset)
    BACKUP_ENGINE = os.environ.get('BACKUP_ENGINE') or 'mysql'
    BACKUP_CONFIG = os.environ.get('BACKUP_CONFIG')

    # Dumps are staged here before upload
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/mnt/tmp'

    # Downloads land in the working directory unless set
    DOWNLOAD_DIR = os.environ.get('DOWNLOAD_DIR')

    # Logging (no file handler when unset)
    LOG_DIR = os.environ.get('LOG_DIR')

    # S3
    S3_MAX_ATTEMPTS = int(os.environ.get('S3_MAX_ATTEMPTS', 5))

    # Scheduler
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE') or '0 2 * * *'
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'tmp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    LOG_DIR = None
    S3_MAX_ATTEMPTS = 1


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def default_settings_path(engine: str) -> str:
    """Settings file used when none is given: /etc/.{engine}.backups.yml"""
    return f"/etc/.{engine}.backups.yml"


def derived_bucket_name(aws_secret_id: str) -> str:
    """Bucket name historically derived from the access key ID."""
    return f"ey-backup-{hashlib.sha1(aws_secret_id.encode()).hexdigest()[:12]}"


@dataclass
class BackupSettings:
    """Contents of a backup settings file."""

    aws_secret_id: str
    aws_secret_key: str
    databases: List[str]
    keep: int
    env: Optional[str] = None
    dbuser: Optional[str] = None
    dbpass: Optional[str] = None
    dbhost: Optional[str] = None
    bucket: Optional[str] = None
    region: str = 'us-east-1'
    endpoint_url: Optional[str] = None
    acl: Optional[str] = 'private'
    extra: dict = field(default_factory=dict)

    @property
    def bucket_name(self) -> str:
        return self.bucket or derived_bucket_name(self.aws_secret_id)


REQUIRED_KEYS = ('aws_secret_id', 'aws_secret_key', 'databases', 'keep')


def parse_backup_settings(data) -> BackupSettings:
    """
    Build BackupSettings from a parsed YAML mapping.

    Keys may carry a leading ':' (Ruby symbols written by older tooling).

    Raises:
        ConfigurationMissing: If required keys are absent or malformed
    """
    if not isinstance(data, dict):
        raise ConfigurationMissing("Backup settings must be a YAML mapping")

    values = {str(key).lstrip(':'): value for key, value in data.items()}

    missing = [key for key in REQUIRED_KEYS if values.get(key) in (None, '')]
    if missing:
        raise ConfigurationMissing(f"Backup settings missing required keys: {', '.join(missing)}")

    databases = values.pop('databases')
    if isinstance(databases, str):
        databases = [databases]
    if not isinstance(databases, list) or not databases:
        raise ConfigurationMissing("'databases' must be a non-empty list of database names")

    try:
        keep = int(values.pop('keep'))
    except (TypeError, ValueError):
        raise ConfigurationMissing("'keep' must be an integer")
    if keep < 0:
        raise ConfigurationMissing("'keep' must not be negative")

    known = set(BackupSettings.__dataclass_fields__) - {'databases', 'keep', 'extra'}
    kwargs = {key: values.pop(key) for key in list(values) if key in known}
    for key in ('dbpass', 'dbuser', 'dbhost', 'env'):
        if kwargs.get(key) is not None:
            kwargs[key] = str(kwargs[key])

    return BackupSettings(
        databases=[str(db) for db in databases],
        keep=keep,
        extra=values,
        **kwargs
    )


def load_backup_settings(filename: str) -> BackupSettings:
    """
    Load the backup settings file.

    Args:
        filename: Path of the YAML settings file

    Returns:
        BackupSettings

    Raises:
        ConfigurationMissing: If the file is missing, unreadable or incomplete
    """
    if not os.path.exists(filename):
        raise ConfigurationMissing(f"You need to have a backup file at {filename}")

    try:
        with open(filename, 'r') as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationMissing(f"Cannot read backup settings {filename}: {e}")

    return parse_backup_settings(data)
