"""
Unit tests for the backup orchestrator (dumpvault/backup/executor.py).

Tests backup, restore and clean workflows against a local store and a fake
database adapter.
"""

import gzip
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from dumpvault.backup.adapters import MysqlAdapter, RestoreFailed, UnsupportedEngine
from dumpvault.backup.executor import (
    BackupFailed,
    BackupOrchestrator,
    build_orchestrator,
    run_backup,
    run_clean,
    run_restore,
)
from dumpvault.backup.retention import parse_backup_timestamp
from dumpvault.backup.settings import ConfigurationMissing, UnknownEnvironment
from dumpvault.backup.storage import LocalStorage, ObjectNotFound, StorageError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def read(path):
    with open(path, 'rb') as f:
        return f.read()


@pytest.fixture
def orchestrator(settings, fake_adapter, local_store):
    return BackupOrchestrator(settings, adapter=fake_adapter, store=local_store)


class TestBackup:
    """Test the backup workflow."""

    def test_backup_uploads_dump_and_pointer(self, orchestrator, local_store):
        file_name = orchestrator.backup(now=utc(2024, 1, 15, 3, 30))

        assert file_name == 'dump-app-202401150330.sql.gz'
        assert sorted(local_store.list()) == [
            'dump-app-202401150330.sql.gz',
            'most-recent-dump-app.txt',
        ]
        assert read(local_store.fetch('most-recent-dump-app.txt')) == b'dump-app-202401150330.sql.gz'
        assert gzip.decompress(read(local_store.fetch(file_name))) == b'CREATE TABLE t (id int);\n'

    def test_backup_removes_local_dump(self, orchestrator, fake_adapter):
        orchestrator.backup()

        assert len(fake_adapter.dumped_paths) == 1
        assert not os.path.exists(fake_adapter.dumped_paths[0])

    @freeze_time("2024-02-29 23:59:41")
    def test_backup_name_uses_current_utc_time(self, orchestrator):
        file_name = orchestrator.backup()

        assert file_name == 'dump-app-202402292359.sql.gz'
        assert parse_backup_timestamp(file_name) == utc(2024, 2, 29, 23, 59)

    def test_pointer_overwritten_by_later_backup(self, orchestrator, local_store):
        orchestrator.backup(now=utc(2024, 1, 15, 3, 0))
        orchestrator.backup(now=utc(2024, 1, 15, 4, 0))

        assert read(local_store.fetch('most-recent-dump-app.txt')) == b'dump-app-202401150400.sql.gz'

    def test_dump_failure(self, settings, make_fake_adapter, local_store):
        adapter = make_fake_adapter(fail_dump=True)
        orchestrator = BackupOrchestrator(settings, adapter=adapter, store=local_store)

        with pytest.raises(BackupFailed, match='mysqldump exited'):
            orchestrator.backup()

        assert local_store.list() == []

    def test_upload_failure_removes_dump_and_skips_pointer(self, settings, fake_adapter, local_dir):
        store = MagicMock()
        store.store.side_effect = StorageError("S3 upload failed (InternalError)")
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        with pytest.raises(BackupFailed, match='InternalError'):
            orchestrator.backup()

        # Only the dump upload was attempted; the pointer was never written
        assert store.store.call_count == 1
        assert os.listdir(local_dir) == []

    def test_pointer_failure_is_backup_failure(self, settings, fake_adapter, local_dir):
        store = MagicMock()
        store.store.side_effect = [None, StorageError("pointer write failed")]
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        with pytest.raises(BackupFailed):
            orchestrator.backup()

        assert os.listdir(local_dir) == []

    def test_unexpected_error_still_removes_dump(self, settings, fake_adapter, local_dir):
        store = MagicMock()
        store.store.side_effect = RuntimeError("unexpected")
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        with pytest.raises(RuntimeError):
            orchestrator.backup()

        assert os.listdir(local_dir) == []


class TestRestore:
    """Test the restore workflow."""

    def test_restore_most_recent_backup(self, orchestrator, fake_adapter, local_dir):
        orchestrator.backup(now=utc(2024, 1, 14, 0, 0))
        orchestrator.backup(now=utc(2024, 1, 15, 0, 0))

        restored = orchestrator.restore()

        assert restored == 'dump-app-202401150000.sql.gz'
        assert len(fake_adapter.restored) == 1
        path, content = fake_adapter.restored[0]
        assert gzip.decompress(content) == b'CREATE TABLE t (id int);\n'
        # Fetched files are removed afterwards
        assert not os.path.exists(path)
        assert os.listdir(local_dir) == []

    def test_restore_from_named_environment(self, orchestrator, fake_adapter, local_store):
        local_store.store('dump-app_staging-202401100000.sql.gz', b'staging dump')
        local_store.store('most-recent-dump-app_staging.txt', 'dump-app_staging-202401100000.sql.gz')

        restored = orchestrator.restore('staging')

        assert restored == 'dump-app_staging-202401100000.sql.gz'
        assert fake_adapter.restored[0][1] == b'staging dump'

    def test_unknown_environment_makes_no_remote_calls(self, settings, fake_adapter):
        store = MagicMock()
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        with pytest.raises(UnknownEnvironment, match='production'):
            orchestrator.restore(environment='production')

        assert store.mock_calls == []
        assert fake_adapter.restored == []

    def test_missing_pointer(self, orchestrator, fake_adapter):
        with pytest.raises(ObjectNotFound):
            orchestrator.restore()

        assert fake_adapter.restored == []

    def test_missing_dump_object(self, orchestrator, local_store, local_dir):
        local_store.store('most-recent-dump-app.txt', 'dump-app-202401010000.sql.gz')

        with pytest.raises(ObjectNotFound):
            orchestrator.restore()

        assert os.listdir(local_dir) == []

    def test_restore_failure_removes_fetched_files(self, settings, make_fake_adapter, local_dir, local_store):
        adapter = make_fake_adapter(restore_error=RestoreFailed("mysql exited with status 1"))
        orchestrator = BackupOrchestrator(settings, adapter=adapter, store=local_store)
        orchestrator.backup()

        with pytest.raises(RestoreFailed):
            orchestrator.restore()

        assert os.listdir(local_dir) == []


class TestClean:
    """Test the clean workflow."""

    def test_clean_never_touches_unrelated_objects(self, orchestrator, local_store):
        for name in ('dump-app-202401010000.sql.gz', 'dump-app-202401020000.sql.gz', 'unrelated-file.txt'):
            local_store.store(name, b'x')

        summary = orchestrator.clean(now=utc(2024, 3, 1))

        assert 'unrelated-file.txt' in local_store.list()
        assert summary['considered'] == 2
        # Both backups fall in the same week; the earliest survives
        assert summary['deleted'] == ['dump-app-202401020000.sql.gz']
        assert summary['kept'] == ['dump-app-202401010000.sql.gz']

    def test_clean_ignores_other_databases_and_pointer(self, orchestrator, local_store):
        names = [
            'dump-billing-202401020000.sql.gz',
            'dump-billing-202401030000.sql.gz',
            'most-recent-dump-app.txt',
            'dump-app-202401010000.sql.gz',
        ]
        for name in names:
            local_store.store(name, b'x')

        summary = orchestrator.clean(now=utc(2024, 3, 1))

        assert summary['deleted'] == []
        assert sorted(local_store.list()) == sorted(names)

    def test_clean_applies_retention(self, orchestrator, local_store):
        names = [
            'dump-app-202401010000.sql.gz',
            'dump-app-202401011200.sql.gz',
            'dump-app-202401080000.sql.gz',
        ]
        for name in names:
            local_store.store(name, b'x')

        summary = orchestrator.clean(now=utc(2024, 1, 15))

        assert summary['deleted'] == ['dump-app-202401011200.sql.gz']
        assert sorted(local_store.list()) == [
            'dump-app-202401010000.sql.gz',
            'dump-app-202401080000.sql.gz',
        ]

    def test_clean_deletes_backups_with_invalid_timestamps(self, orchestrator, local_store):
        local_store.store('dump-app-202413990000.sql.gz', b'x')
        local_store.store('dump-app-202401140000.sql.gz', b'x')

        summary = orchestrator.clean(now=utc(2024, 1, 15))

        assert summary['deleted'] == ['dump-app-202413990000.sql.gz']

    def test_clean_continues_after_delete_failure(self, settings, fake_adapter):
        store = MagicMock()
        store.list.return_value = [
            'dump-app-202401010000.sql.gz',
            'dump-app-202401020000.sql.gz',
            'dump-app-202401030000.sql.gz',
            'dump-app-202401040000.sql.gz',
        ]
        store.delete.side_effect = [StorageError("S3 delete failed (InternalError)"), None, None]
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        summary = orchestrator.clean(now=utc(2024, 3, 1))

        assert store.delete.call_count == 3
        assert summary['deleted'] == [
            'dump-app-202401030000.sql.gz',
            'dump-app-202401040000.sql.gz',
        ]
        assert len(summary['errors']) == 1
        assert 'dump-app-202401020000.sql.gz' in summary['errors'][0]

    def test_clean_list_failure_propagates(self, settings, fake_adapter):
        store = MagicMock()
        store.list.side_effect = StorageError("S3 list failed")
        orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        with pytest.raises(StorageError):
            orchestrator.clean()

        store.delete.assert_not_called()

    def test_backup_name_is_kept_by_clean(self, orchestrator, local_store):
        file_name = orchestrator.backup(now=utc(2024, 1, 15, 3, 30))

        summary = orchestrator.clean(now=utc(2024, 1, 15, 4, 0))

        assert summary['considered'] == 1
        assert summary['kept'] == [file_name]


class TestBuildOrchestrator:
    """Test orchestrator construction from configuration."""

    def test_build_from_app_config(self, app):
        orchestrator = build_orchestrator(app.config)

        assert isinstance(orchestrator.adapter, MysqlAdapter)
        assert isinstance(orchestrator.store, LocalStorage)
        assert orchestrator.database == 'app'
        assert orchestrator.adapter.local_dir == app.config['DUMP_LOCAL_DIR']

    def test_injected_store_kept_when_falsy(self, settings, fake_adapter):
        store = MagicMock()
        store.__bool__.return_value = False

        with patch('dumpvault.backup.executor.create_store') as mock_create_store:
            orchestrator = BackupOrchestrator(settings, adapter=fake_adapter, store=store)

        assert orchestrator.store is store
        mock_create_store.assert_not_called()

    def test_build_from_settings(self, settings):
        orchestrator = build_orchestrator(settings)
        assert orchestrator.settings is settings

    def test_missing_storage_fails_fast(self, app):
        app.config['STORAGE_DIRECTORY'] = None

        with patch('dumpvault.backup.executor.create_adapter') as mock_adapter:
            with pytest.raises(ConfigurationMissing):
                build_orchestrator(app.config)

        mock_adapter.assert_not_called()

    def test_unsupported_engine_fails_at_selection(self, app):
        app.config['DATABASE_URL'] = 'sqlite:///tmp/app.db'

        with pytest.raises(UnsupportedEngine):
            build_orchestrator(app.config)

    def test_run_helpers_use_app_config(self, app):
        with patch('dumpvault.backup.executor.BackupOrchestrator') as mock_cls:
            instance = mock_cls.return_value
            instance.backup.return_value = 'dump-app-202401010000.sql.gz'

            assert run_backup(app) == 'dump-app-202401010000.sql.gz'
            run_restore(app, 'staging')
            run_clean(app)

        instance.restore.assert_called_once_with('staging')
        instance.clean.assert_called_once_with()
