"""
Download of stored backups to the local filesystem.
"""

import logging
import os
import tempfile
from typing import Callable, Optional, Tuple

from .naming import local_filename
from .storage import BackupObject, TransferFailed

logger = logging.getLogger(__name__)


def download_backup(storage, backup: BackupObject, database: str, directory: Optional[str] = None,
                    progress: Optional[Callable[[int], None]] = None) -> Tuple[str, str]:
    """
    Stream a stored backup into a local file.

    The body is written to a temporary file in the destination directory
    and renamed into place once complete, so a failed download never
    leaves a truncated file under the backup's name.

    Args:
        storage: Object store exposing get(key)
        backup: Backup to fetch
        database: Database the backup belongs to (returned unchanged)
        directory: Destination directory (default: current working directory)
        progress: Optional callback receiving the size of each chunk written

    Returns:
        Tuple of (database, local path)

    Raises:
        TransferFailed: If reading from the store or writing locally fails
    """
    directory = directory or os.getcwd()
    filename = local_filename(backup.key)
    destination = os.path.join(directory, filename)

    logger.info(f"downloading: {filename}")

    try:
        fd, temp_path = tempfile.mkstemp(prefix=f".{filename}.", suffix='.part', dir=directory)
    except OSError as e:
        raise TransferFailed(f"Cannot create download file in {directory}: {e}")

    try:
        with os.fdopen(fd, 'wb') as f:
            for chunk in storage.get(backup.key):
                f.write(chunk)
                if progress:
                    progress(len(chunk))
        os.replace(temp_path, destination)
    except OSError as e:
        _discard(temp_path)
        raise TransferFailed(f"Failed to write {destination}: {e}")
    except BaseException:
        _discard(temp_path)
        raise

    logger.info(f"finished: {destination}")
    return database, destination


def _discard(path: str):
    """Remove a partial download if it is still there."""
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
