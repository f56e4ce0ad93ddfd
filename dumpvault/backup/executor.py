"""
Backup orchestrator - backup, restore and clean workflows.

Backup:
1. Dump the database to a local temporary file
2. Upload it as dump-<database>-<timestamp>.sql.gz
3. Point most-recent-dump-<database>.txt at it
4. Remove the local file (always)

Restore:
1. Read the pointer object for the target environment
2. Download the dump it names
3. Replay it into the configured database
4. Remove the local files (always)

Clean:
1. List the store and keep only this database's backups
2. Apply the retention policy
3. Delete everything not kept, continuing past individual failures

Only one orchestration process per database may run at a time; overlapping
backup and clean runs are not coordinated here.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .adapters import DatabaseAdapter, DumpFailed, create_adapter
from .retention import (
    backup_filename,
    build_candidates,
    pointer_filename,
    select_backups_to_keep,
)
from .settings import BackupSettings, load_settings
from .storage import StorageError, create_store


logger = logging.getLogger(__name__)


class BackupFailed(Exception):
    """Raised when a dump could not be produced or stored."""
    pass


def _remove_local_file(path: Optional[str]):
    if path and os.path.exists(path):
        try:
            os.remove(path)
            logger.debug(f"Removed local file: {path}")
        except OSError as e:
            logger.warning(f"Failed to remove local file {path}: {e}")


class BackupOrchestrator:
    """
    Composes a database adapter and a remote store into backup, restore and
    clean operations.
    """

    def __init__(self, settings: BackupSettings, adapter: Optional[DatabaseAdapter] = None, store=None):
        """
        Initialize orchestrator.

        Args:
            settings: Backup settings
            adapter: Database adapter (default: chosen from settings.credentials)
            store: Remote store (default: built from settings.storage)

        Raises:
            UnsupportedEngine: If the configured engine has no adapter
            ConfigurationMissing: If storage is not configured
        """
        self.settings = settings
        self.adapter = adapter if adapter is not None else create_adapter(settings.credentials, settings.local_dir)
        self.store = store if store is not None else create_store(settings.storage, settings.local_dir)

    @property
    def database(self) -> str:
        return self.settings.credentials.database

    def backup(self, now: Optional[datetime] = None) -> str:
        """
        Dump the database and upload it.

        Args:
            now: Backup time used in the object name (default: current UTC time)

        Returns:
            Name of the stored backup object

        Raises:
            BackupFailed: If the dump or either upload fails
        """
        file_name = backup_filename(self.database, now or datetime.now(timezone.utc))
        local_dump_path = None

        logger.info(f"Starting backup of {self.database} as {file_name}")

        try:
            local_dump_path = self.adapter.dump()

            with open(local_dump_path, 'rb') as dump_file:
                self.store.store(file_name, dump_file)
            logger.info(f"Uploaded {file_name}")

            self.store.store(pointer_filename(self.database), file_name)
            logger.info(f"Updated {pointer_filename(self.database)}")

        except (DumpFailed, StorageError, OSError) as e:
            logger.error(f"Backup of {self.database} failed: {e}")
            raise BackupFailed(f"Backup of {self.database} failed: {e}") from e

        finally:
            _remove_local_file(local_dump_path)

        return file_name

    def restore(self, environment: Optional[str] = None) -> str:
        """
        Restore the most recent backup of an environment into the configured
        database.

        Args:
            environment: Named environment whose backup to restore
                (default: the configured database's own backups)

        Returns:
            Name of the restored backup object

        Raises:
            UnknownEnvironment: If the environment is not configured
            ObjectNotFound: If the pointer or the backup object is missing
            RestoreFailed: If the restore command fails
        """
        database = self.settings.database_for(environment)
        pointer_path = None
        dump_path = None

        try:
            pointer_path = self.store.fetch(pointer_filename(database))
            with open(pointer_path, 'r', encoding='utf-8') as f:
                dump_name = f.read().strip()

            logger.info(f"Restoring {dump_name} into {self.database}")
            dump_path = self.store.fetch(dump_name)
            self.adapter.restore(dump_path)

        finally:
            _remove_local_file(pointer_path)
            _remove_local_file(dump_path)

        logger.info(f"Restore of {dump_name} complete")
        return dump_name

    def clean(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delete backups of this database that the retention policy does not keep.

        Objects that are not this database's backups are never touched. A
        failed delete is logged and recorded; remaining deletes still run.

        Args:
            now: Evaluation time (default: current UTC time)

        Returns:
            Dict with 'considered', 'kept', 'deleted' (names) and 'errors' (messages)

        Raises:
            StorageError: If the store cannot be listed
        """
        candidates = build_candidates(self.store.list(), self.database)
        to_keep = select_backups_to_keep(candidates, now)
        to_delete = sorted(c.name for c in candidates if c.name not in to_keep)

        logger.info(
            f"Cleaning {self.database}: {len(candidates)} backups, "
            f"keeping {len(to_keep)}, deleting {len(to_delete)}"
        )

        summary = {
            'considered': len(candidates),
            'kept': sorted(to_keep),
            'deleted': [],
            'errors': []
        }

        for name in to_delete:
            try:
                self.store.delete(name)
                summary['deleted'].append(name)
                logger.info(f"Deleted {name}")
            except StorageError as e:
                error_msg = f"Failed to delete {name}: {e}"
                logger.error(error_msg)
                summary['errors'].append(error_msg)

        return summary


def build_orchestrator(config) -> BackupOrchestrator:
    """
    Build an orchestrator from a Flask config mapping or BackupSettings.

    Raises:
        ConfigurationMissing: If configuration is incomplete
        UnsupportedEngine: If the database engine is not supported
    """
    settings = config if isinstance(config, BackupSettings) else load_settings(config)
    return BackupOrchestrator(settings)


def run_backup(app) -> str:
    """Run a backup with the configuration of a Flask app."""
    return build_orchestrator(app.config).backup()


def run_restore(app, environment: Optional[str] = None) -> str:
    """Run a restore with the configuration of a Flask app."""
    return build_orchestrator(app.config).restore(environment)


def run_clean(app) -> Dict[str, Any]:
    """Run retention cleanup with the configuration of a Flask app."""
    return build_orchestrator(app.config).clean()
