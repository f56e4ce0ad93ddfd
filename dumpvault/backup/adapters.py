"""
Database adapters for dump and restore operations.

Supports:
- MysqlAdapter: mysqldump | gzip, gunzip | mysql
- PostgresAdapter: pg_dump --compress, gunzip | psql

Commands are built as argument lists and run as a pipe chain without a shell,
so credential values are never interpreted by a shell.
"""

import glob
import hashlib
import logging
import os
import re
import subprocess
import tempfile
import time
from typing import Dict, List, Optional

from .settings import Credentials, parse_pg_version


logger = logging.getLogger(__name__)

# Orphaned dump files older than this are removed before a new dump
STALE_DUMP_AGE_SECONDS = 24 * 60 * 60

DEFAULT_PG_VERSION = 9


class UnsupportedEngine(Exception):
    """Raised when the configured database engine has no adapter."""
    pass


class DumpFailed(Exception):
    """Raised when the dump command fails."""
    pass


class RestoreFailed(Exception):
    """Raised when the restore command fails."""
    pass


def run_pipeline(commands: List[List[str]], stdout_path: Optional[str] = None,
                 env: Optional[Dict[str, str]] = None) -> List[int]:
    """
    Run commands as a pipe chain, like `cmd1 | cmd2 > stdout_path`.

    Args:
        commands: List of argv lists, one per pipeline stage
        stdout_path: File receiving the last stage's stdout (optional)
        env: Environment for the child processes (optional)

    Returns:
        Exit status of every stage, in pipeline order

    Raises:
        FileNotFoundError: If an executable is not on PATH
    """
    if not commands:
        raise ValueError("No commands provided")

    processes = []
    output = open(stdout_path, 'wb') if stdout_path else None

    try:
        previous = None
        for index, argv in enumerate(commands):
            is_last = index == len(commands) - 1
            if is_last:
                stdout = output
            else:
                stdout = subprocess.PIPE

            process = subprocess.Popen(
                argv,
                stdin=previous.stdout if previous else None,
                stdout=stdout,
                env=env
            )
            if previous:
                # Lets the upstream stage receive SIGPIPE if this one exits
                previous.stdout.close()

            processes.append(process)
            previous = process

        return [process.wait() for process in processes]

    except BaseException:
        for process in processes:
            if process.poll() is None:
                process.kill()
                process.wait()
        raise

    finally:
        if output:
            output.close()


def mask_command(argv: List[str]) -> str:
    """Render a command for logging with password arguments masked."""
    return ' '.join(re.sub(r'^(--password=).*', r'\1***', arg) for arg in argv)


class DatabaseAdapter:
    """
    Base class for engine-specific adapters.

    Subclasses provide dump_command() and restore_command().
    """

    engine = None

    def __init__(self, credentials: Credentials, local_dir: Optional[str] = None):
        """
        Initialize adapter.

        Args:
            credentials: Database credentials
            local_dir: Directory for dump files (default: system temp dir)
        """
        self.credentials = credentials
        self.local_dir = local_dir or tempfile.gettempdir()

    def dump_command(self, path: str) -> List[List[str]]:
        raise NotImplementedError

    def restore_command(self, path: str) -> List[List[str]]:
        raise NotImplementedError

    def command_env(self) -> Optional[Dict[str, str]]:
        """Environment for child processes, or None to inherit."""
        return None

    @property
    def tempfile_prefix(self) -> str:
        """
        Stable prefix identifying dump files for this database and user.

        Files left behind by a crashed run share the prefix, so they can be
        found and removed by later runs.
        """
        c = self.credentials
        key = f"dump{c.database}/{c.username or ''}/{c.password or ''}"
        return hashlib.md5(key.encode('utf-8')).hexdigest()

    def remove_stale_dumps(self) -> int:
        """
        Remove dump files with this adapter's prefix older than 24 hours.

        Returns:
            Number of files removed
        """
        cutoff = time.time() - STALE_DUMP_AGE_SECONDS
        pattern = os.path.join(glob.escape(self.local_dir), f"{self.tempfile_prefix}*")
        removed = 0

        for path in glob.glob(pattern):
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
                    removed += 1
                    logger.info(f"Removed stale dump file: {path}")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove stale dump file {path}: {e}")

        return removed

    def dump(self) -> str:
        """
        Dump the database to a gzip-compressed SQL file.

        Returns:
            Path to the dump file; the caller owns and must delete it

        Raises:
            DumpFailed: If the dump command fails (no partial file is left)
        """
        os.makedirs(self.local_dir, exist_ok=True)
        self.remove_stale_dumps()

        dump_file = tempfile.NamedTemporaryFile(
            prefix=self.tempfile_prefix,
            dir=self.local_dir,
            delete=False
        )
        dump_file.close()
        path = dump_file.name

        try:
            self._run(self.dump_command(path), path, DumpFailed)
        except BaseException:
            # Never leave a truncated dump behind
            if os.path.exists(path):
                os.remove(path)
            raise

        logger.info(f"Dumped database {self.credentials.database} to {path} "
                    f"({os.path.getsize(path) / 1024 / 1024:.2f} MB)")
        return path

    def restore(self, path: str):
        """
        Replace the live database contents with a dump file.

        Args:
            path: Path to a gzip-compressed SQL dump

        Raises:
            RestoreFailed: If the restore command fails
        """
        self._run(self.restore_command(path), None, RestoreFailed)
        logger.info(f"Restored database {self.credentials.database} from {path}")

    def _run(self, commands: List[List[str]], stdout_path: Optional[str], error_class):
        for argv in commands:
            logger.debug(f"Running: {mask_command(argv)}")

        try:
            statuses = run_pipeline(commands, stdout_path=stdout_path, env=self.command_env())
        except OSError as e:
            raise error_class(f"Failed to start command: {e}") from e

        for argv, status in zip(commands, statuses):
            if status != 0:
                raise error_class(f"{argv[0]} exited with status {status}")


class MysqlAdapter(DatabaseAdapter):
    """Adapter for MySQL and MariaDB."""

    engine = 'mysql'

    def dump_command(self, path: str) -> List[List[str]]:
        dump = ['mysqldump', '--quick', '--single-transaction', '--create-options']
        dump += self._options()
        return [dump, ['gzip', '-9']]

    def restore_command(self, path: str) -> List[List[str]]:
        return [['gunzip', '-c', path], ['mysql'] + self._options()]

    def _options(self) -> List[str]:
        c = self.credentials
        options = []
        if c.username is not None:
            options += ['-u', c.username]
        if c.password is not None:
            options.append(f"--password={c.password}")
        if c.host is not None:
            options += ['-h', c.host]
        if c.port is not None:
            options += ['-P', str(c.port)]
        if c.encoding is not None:
            options.append(f"--default-character-set={c.encoding}")
        options.append(c.database)
        return options


class PostgresAdapter(DatabaseAdapter):
    """Adapter for PostgreSQL and PostGIS."""

    engine = 'postgres'

    @property
    def pg_version(self) -> int:
        return parse_pg_version(self.credentials.options.get('pg_version') or DEFAULT_PG_VERSION)

    def dump_command(self, path: str) -> List[List[str]]:
        dump = ['pg_dump', '--clean', '--format=p', '--compress=1']
        dump += self._connection_options()
        dump.append(self.credentials.database)
        return [dump]

    def restore_command(self, path: str) -> List[List[str]]:
        psql = ['psql'] + self._connection_options() + ['-d', self.credentials.database]
        return [['gunzip', '-c', path], psql]

    def command_env(self) -> Optional[Dict[str, str]]:
        if self.credentials.password is None:
            return None
        env = os.environ.copy()
        env['PGPASSWORD'] = self.credentials.password
        return env

    def _connection_options(self) -> List[str]:
        c = self.credentials
        options = []
        if c.username is not None:
            options += ['-U', c.username]
        if c.host is not None:
            options += ['-h', c.host]
        if c.port is not None:
            options += ['-p', str(c.port)]
        if self.pg_version >= 9:
            options.append('-w')
        return options


def create_adapter(credentials: Credentials, local_dir: Optional[str] = None) -> DatabaseAdapter:
    """
    Factory function to create the adapter for a database engine.

    Args:
        credentials: Database credentials; credentials.adapter names the engine
        local_dir: Directory for dump files

    Returns:
        MysqlAdapter or PostgresAdapter instance

    Raises:
        UnsupportedEngine: If the engine is not recognized
    """
    engine = (credentials.adapter or '').lower()

    if 'mysql' in engine:
        return MysqlAdapter(credentials, local_dir)
    elif 'postgres' in engine or 'postgis' in engine:
        return PostgresAdapter(credentials, local_dir)
    else:
        raise UnsupportedEngine(f"Database adapter '{credentials.adapter}' not supported")
