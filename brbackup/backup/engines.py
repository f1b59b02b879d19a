"""
Database engine adapters.

Each engine runs the database's own command line tools as subprocesses and
streams their output through gzip:

- MysqlEngine: mysqldump / mysql
- PostgresEngine: pg_dump / psql / dropdb / createdb

Dumps and loads move in fixed-size chunks between the subprocess pipe and
a file, so memory use does not depend on database size.
"""

import gzip
import os
import subprocess
import tempfile
from typing import BinaryIO, Dict, List, Optional

from brbackup.errors import BRBackupError, ConfigurationMissing

CHUNK_SIZE = 64 * 1024


class EngineFailure(BRBackupError):
    """Raised when a dump, restore or clone subprocess fails."""
    pass


class DatabaseEngine:
    """
    Base class for engine adapters.

    Subclasses implement dump(), restore() and clone() with the helpers
    below.
    """

    name = None

    def __init__(self, settings):
        """
        Initialize engine adapter.

        Args:
            settings: BackupSettings carrying dbuser, dbpass and dbhost
        """
        self.settings = settings

    @property
    def dbuser(self) -> Optional[str]:
        return self.settings.dbuser

    @property
    def dbpass(self) -> Optional[str]:
        return self.settings.dbpass

    @property
    def dbhost(self) -> Optional[str]:
        return self.settings.dbhost

    def dump(self, database: str, fileobj: BinaryIO):
        """Write a gzip-compressed SQL dump of database into fileobj."""
        raise NotImplementedError(f"Implement dump() in {self.__class__.__name__}")

    def restore(self, database: str, fileobj: BinaryIO):
        """Load a gzip-compressed SQL dump from fileobj into an existing database."""
        raise NotImplementedError(f"Implement restore() in {self.__class__.__name__}")

    def clone(self, target: str, fileobj: BinaryIO):
        """Drop target if it exists, create it, and load the dump into it."""
        raise NotImplementedError(f"Implement clone() in {self.__class__.__name__}")

    def _environment(self) -> Dict[str, str]:
        """Subprocess environment; passwords travel here instead of argv."""
        return dict(os.environ)

    def _run(self, command: List[str]) -> str:
        """
        Run a short command and return its stdout.

        Raises:
            EngineFailure: If the command cannot start or exits non-zero
        """
        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._environment(),
                text=True
            )
        except OSError as e:
            raise EngineFailure(f"Failed to start {command[0]}: {e}")

        if result.returncode != 0:
            raise EngineFailure(
                f"{command[0]} exited with status {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout

    def _dump_to(self, command: List[str], fileobj: BinaryIO):
        """
        Pipe a dump command's stdout through gzip into fileobj.

        Raises:
            EngineFailure: If the command cannot start or exits non-zero
        """
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr,
                    env=self._environment()
                )
            except OSError as e:
                raise EngineFailure(f"Failed to start {command[0]}: {e}")

            try:
                with gzip.GzipFile(fileobj=fileobj, mode='wb') as gz:
                    for chunk in iter(lambda: process.stdout.read(CHUNK_SIZE), b''):
                        gz.write(chunk)
            except BaseException:
                process.kill()
                process.wait()
                raise
            finally:
                process.stdout.close()

            returncode = process.wait()
            if returncode != 0:
                raise EngineFailure(
                    f"{command[0]} exited with status {returncode}: {_read_stderr(stderr)}"
                )

    def _load_from(self, command: List[str], fileobj: BinaryIO):
        """
        Decompress fileobj and feed it to a load command's stdin.

        Raises:
            EngineFailure: If the command fails or the dump is not valid gzip
        """
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(
                    command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                    env=self._environment()
                )
            except OSError as e:
                raise EngineFailure(f"Failed to start {command[0]}: {e}")

            try:
                with gzip.GzipFile(fileobj=fileobj, mode='rb') as gz:
                    for chunk in iter(lambda: gz.read(CHUNK_SIZE), b''):
                        process.stdin.write(chunk)
            except BrokenPipeError:
                # the loader died early; its exit status below says why
                pass
            except (OSError, EOFError) as e:
                process.kill()
                process.wait()
                raise EngineFailure(f"Backup file is not a readable gzip dump: {e}")
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

            returncode = process.wait()
            if returncode != 0:
                raise EngineFailure(
                    f"{command[0]} exited with status {returncode}: {_read_stderr(stderr)}"
                )


def _read_stderr(stderr) -> str:
    stderr.seek(0)
    return stderr.read().decode('utf-8', errors='replace').strip()


class MysqlEngine(DatabaseEngine):
    """
    MySQL adapter.

    Dumps use --single-transaction unless the schema holds MyISAM tables,
    which cannot be dumped consistently that way.
    """

    name = 'mysql'

    def _environment(self):
        env = super()._environment()
        if self.dbpass:
            env['MYSQL_PWD'] = self.dbpass
        return env

    def _connection_args(self) -> List[str]:
        args = []
        if self.dbuser:
            args.append(f"-u{self.dbuser}")
        if self.dbhost:
            args.append(f"-h{self.dbhost}")
        return args

    def has_myisam(self, database: str) -> bool:
        """Check whether any table of database uses the MyISAM engine."""
        schema = database.replace("'", "''")
        query = (
            f"SELECT 1 FROM information_schema.tables "
            f"WHERE table_schema='{schema}' AND engine='MyISAM' LIMIT 1;"
        )
        output = self._run(['mysql', *self._connection_args(), '-N', '-e', query])
        return output.strip() == '1'

    def dump(self, database, fileobj):
        command = ['mysqldump', *self._connection_args()]
        if not self.has_myisam(database):
            command.append('--single-transaction')
        command.append(database)
        self._dump_to(command, fileobj)

    def restore(self, database, fileobj):
        self._load_from(['mysql', *self._connection_args(), database], fileobj)

    def clone(self, target, fileobj):
        quoted = '`' + target.replace('`', '``') + '`'
        self._run([
            'mysql', *self._connection_args(), '-e',
            f"DROP DATABASE IF EXISTS {quoted}; CREATE DATABASE {quoted};"
        ])
        self.restore(target, fileobj)


class PostgresEngine(DatabaseEngine):
    """PostgreSQL adapter using plain-format pg_dump."""

    name = 'postgres'

    def _environment(self):
        env = super()._environment()
        if self.dbpass:
            env['PGPASSWORD'] = self.dbpass
        return env

    def _connection_args(self) -> List[str]:
        args = []
        if self.dbuser:
            args.extend(['-U', self.dbuser])
        if self.dbhost:
            args.extend(['-h', self.dbhost])
        return args

    def dump(self, database, fileobj):
        # each object is preceded by DROP ... IF EXISTS; restore into a populated database relies on it
        self._dump_to(
            ['pg_dump', *self._connection_args(), '--no-owner', '--clean', '--if-exists', database],
            fileobj
        )

    def restore(self, database, fileobj):
        self._load_from(
            ['psql', *self._connection_args(), '-q', '-v', 'ON_ERROR_STOP=1', '-d', database],
            fileobj
        )

    def clone(self, target, fileobj):
        self._run(['dropdb', *self._connection_args(), '--if-exists', target])
        self._run(['createdb', *self._connection_args(), target])
        self.restore(target, fileobj)


def build_engine_registry() -> Dict[str, type]:
    """
    Map engine names to adapter classes.

    Called once at startup; the result is passed to whatever builds an
    engine so tests can inject fakes.
    """
    return {
        MysqlEngine.name: MysqlEngine,
        PostgresEngine.name: PostgresEngine,
    }


def create_engine(name: str, settings, registry: Optional[Dict[str, type]] = None) -> DatabaseEngine:
    """
    Factory function to create the adapter for an engine name.

    Args:
        name: Engine name ('mysql' or 'postgres' with the default registry)
        settings: BackupSettings passed to the adapter
        registry: Name to class mapping (default: build_engine_registry())

    Returns:
        DatabaseEngine instance

    Raises:
        ConfigurationMissing: If name is not in the registry
    """
    if registry is None:
        registry = build_engine_registry()

    if name not in registry:
        raise ConfigurationMissing(
            f"Invalid database engine: {name!r}. Valid options: {sorted(registry)}"
        )
    return registry[name](settings)
