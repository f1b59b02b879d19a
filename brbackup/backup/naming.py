"""
Naming rules for backup artifacts.

Remote keys follow the archive layout shared with every existing backup:
{environment}.{database}/{database}.{YYYY-MM-DDTHH-MM-SS}.sql.gz
"""

from datetime import datetime

TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%S'
ARTIFACT_EXTENSION = '.sql.gz'


def backup_timestamp(now: datetime = None) -> str:
    """
    Format a datetime as the timestamp component of a backup key.

    Hyphens replace the colons between time components so the value is
    safe inside object keys and local filenames.

    Args:
        now: Moment to format (default: current local time)

    Returns:
        Timestamp string such as 2020-01-01T00-00-00
    """
    if now is None:
        now = datetime.now()
    return now.strftime(TIMESTAMP_FORMAT)


def artifact_filename(database: str, timestamp: str) -> str:
    """Filename of a dump artifact: {database}.{timestamp}.sql.gz"""
    return f"{database}.{timestamp}{ARTIFACT_EXTENSION}"


def backup_prefix(environment: str, database: str) -> str:
    """
    Listing prefix for one database in one environment.

    There is no trailing separator, so a database whose name starts with
    another tracked name also matches the shorter prefix.
    """
    return f"{environment}.{database}"


def artifact_key(environment: str, database: str, timestamp: str) -> str:
    """
    Build the remote key for a dump artifact.

    Args:
        environment: Environment name (e.g. prod_br)
        database: Database name
        timestamp: Timestamp produced by backup_timestamp()

    Returns:
        Key of the form {env}.{db}/{db}.{ts}.sql.gz
    """
    return f"{backup_prefix(environment, database)}/{artifact_filename(database, timestamp)}"


def local_filename(remote_key: str) -> str:
    """
    Strip everything up to and including the first '/' of a remote key.

    Args:
        remote_key: Key of a stored backup

    Returns:
        Filename of the form {db}.{ts}.sql.gz
    """
    _, separator, remainder = remote_key.partition('/')
    return remainder if separator else remote_key


def staging_name_from_filename(filename: str) -> str:
    """
    Derive the clone target database name from a backup filename.

    Takes the part before the first '.' and swaps a '_production' suffix
    for '_staging'. Names without that suffix are returned unchanged.

    Args:
        filename: Backup filename, e.g. app_production.2020-01-01T00-00-00.sql.gz

    Returns:
        Target database name, e.g. app_staging
    """
    name = filename.split('.', 1)[0]
    if name.endswith('_production'):
        name = name[:-len('_production')] + '_staging'
    return name
