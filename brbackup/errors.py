"""
Exception hierarchy for brbackup.

Every error a command can fail with derives from BRBackupError so the CLI
can turn it into a clean message and exit status 1. Module-specific
subclasses live next to the code that raises them.
"""


class BRBackupError(Exception):
    """Base class for all brbackup failures."""
    pass


class ConfigurationMissing(BRBackupError):
    """Raised when the backup settings file or a required key is absent."""
    pass
