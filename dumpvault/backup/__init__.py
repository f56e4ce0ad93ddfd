"""
Backup module for DumpVault.

This module handles the core backup functionality including:
- Database adapters (MySQL and PostgreSQL dump/restore)
- Remote stores (S3 and local directory)
- Retention policy (daily, weekly and weekly-forever tiers)
- Backup, restore and clean orchestration
"""

from .adapters import MysqlAdapter, PostgresAdapter, create_adapter
from .executor import BackupOrchestrator, build_orchestrator
from .retention import select_backups_to_keep
from .settings import BackupSettings, Credentials, load_settings
from .storage import S3Storage, LocalStorage, create_store

__all__ = [
    'BackupOrchestrator',
    'build_orchestrator',
    'MysqlAdapter',
    'PostgresAdapter',
    'create_adapter',
    'S3Storage',
    'LocalStorage',
    'create_store',
    'select_backups_to_keep',
    'BackupSettings',
    'Credentials',
    'load_settings'
]
