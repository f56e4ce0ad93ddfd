"""
Command line triggers for backup, restore and clean.

    flask --app dumpvault backup full
    flask --app dumpvault backup restore [--env staging]
    flask --app dumpvault backup clean
"""

import click
from flask import current_app
from flask.cli import AppGroup

from dumpvault.backup.adapters import RestoreFailed, UnsupportedEngine
from dumpvault.backup.executor import BackupFailed, run_backup, run_clean, run_restore
from dumpvault.backup.settings import ConfigurationMissing, UnknownEnvironment
from dumpvault.backup.storage import StorageError


backup_cli = AppGroup('backup', help='Back up, restore and prune database dumps.')

HANDLED_ERRORS = (
    BackupFailed,
    ConfigurationMissing,
    RestoreFailed,
    StorageError,
    UnknownEnvironment,
    UnsupportedEngine,
)


@backup_cli.command('full')
def backup_full():
    """Dump the database and upload it."""
    try:
        file_name = run_backup(current_app)
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e))

    click.echo(f"Stored {file_name}")


@backup_cli.command('restore')
@click.option('--env', 'environment', default=None,
              help='Restore the most recent backup of this environment.')
def backup_restore(environment):
    """Replace the database with the most recent backup."""
    try:
        dump_name = run_restore(current_app, environment)
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e))

    click.echo(f"Restored {dump_name}")


@backup_cli.command('clean')
def backup_clean():
    """Delete backups the retention policy does not keep."""
    try:
        summary = run_clean(current_app)
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e))

    click.echo(
        f"Considered {summary['considered']}, kept {len(summary['kept'])}, "
        f"deleted {len(summary['deleted'])}"
    )

    if summary['errors']:
        for error in summary['errors']:
            click.echo(error, err=True)
        raise click.ClickException(f"{len(summary['errors'])} deletions failed")
