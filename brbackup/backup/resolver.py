"""
Resolution of "{index}:{database}" tokens to stored backups.
"""

from brbackup.errors import BRBackupError
from .catalog import Catalog
from .storage import BackupObject


class MalformedToken(BRBackupError):
    """Raised when a backup token has no database segment or a bad index."""
    pass


class BackupNotFound(BRBackupError):
    """Raised when a token's index is outside the database's listing."""
    pass


def parse_token(token: str):
    """
    Split a backup token into (index, database).

    A non-integer index ("abc:db") is rejected instead of being read as
    index 0, so a typo never selects the oldest backup.

    Args:
        token: Token such as "2:app_production"

    Returns:
        Tuple of (int index, database name)

    Raises:
        MalformedToken: If the database segment is missing or the index
            is not an integer
    """
    index, _, database = token.partition(':')
    if not database:
        raise MalformedToken(f"You didn't specify a database name: e.g. 1:rails_production (got {token!r})")

    try:
        return int(index), database
    except ValueError:
        raise MalformedToken(f"Backup index must be an integer: {token!r}")


class Resolver:
    """Maps user tokens to concrete backups by re-listing the catalog."""

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def resolve(self, token: str) -> BackupObject:
        """
        Return the backup a token refers to.

        The index space is always the single-database listing, never the
        merged 'all' listing.

        Raises:
            MalformedToken: If the token cannot be parsed
            BackupNotFound: If the index is negative or past the end
        """
        index, database = parse_token(token)
        backups = self.catalog.list(database)

        if index < 0 or index >= len(backups):
            raise BackupNotFound(
                f"No backup found for database {database!r}: requested index: {index}"
            )

        return backups[index]

    def resolve_most_recent(self, database: str) -> str:
        """
        Build the token of the newest backup of a database.

        The listing is not cached: a backup finishing between this call and
        resolve() shifts what the token points at.
        """
        return f"{len(self.catalog.list(database)) - 1}:{database}"
