"""
Command line interface for brbackup.

Usage:
    brbackup list [DATABASE]          list backups (DATABASE defaults to all)
    brbackup download INDEX:DATABASE  download a backup into the working directory
    brbackup restore INDEX:DATABASE   download and load a backup over its database
    brbackup clone DATABASE           load the newest backup into the _staging database
    brbackup backup                   dump and upload every tracked database, then clean up
    brbackup cleanup                  delete backups outside the retention window
    brbackup schedule                 run backup + cleanup on the configured cron schedule

Every command accepts --from ENVIRONMENT, --config FILE and --engine NAME.
"""

import functools
import logging

import click
from flask import current_app
from flask.cli import AppGroup, ScriptInfo

from brbackup.backup.executor import create_backups
from brbackup.errors import BRBackupError

logger = logging.getLogger(__name__)

cli = AppGroup('backups', help='Clone database backups across environments.')


def backup_options(f):
    """Options shared by every command."""
    f = click.option('-e', '--engine', 'engine_name', metavar='NAME',
                     help='Database engine: mysql or postgres.')(f)
    f = click.option('-c', '--config', 'settings_path', metavar='FILE',
                     help='Backup settings file (default: /etc/.{engine}.backups.yml).')(f)
    f = click.option('-f', '--from', 'environment', metavar='ENVIRONMENT',
                     help='Environment to work with: prod_br, beta, alpha, etc.')(f)
    return f


def handle_errors(f):
    """Turn brbackup failures into a message and exit status 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except BRBackupError as e:
            logger.error(str(e))
            raise click.ClickException(str(e))
        except (click.ClickException, click.Abort):
            raise
        except Exception:
            logger.exception(f"Unexpected failure in {f.__name__}")
            raise
    return wrapper


def _backups(environment, settings_path, engine_name):
    return create_backups(
        current_app.config,
        environment=environment,
        settings_path=settings_path,
        engine_name=engine_name,
        engines=current_app.extensions.get('brbackup_engines')
    )


def _progress(chunk_size):
    click.echo('.', nl=False)


@cli.command('list')
@click.argument('database', default='all')
@backup_options
@handle_errors
def list_command(database, environment, settings_path, engine_name):
    """List backups for DATABASE, oldest first."""
    backups = _backups(environment, settings_path, engine_name)
    backups.list_backups(database, printer=click.echo)


@cli.command('download')
@click.argument('token', metavar='INDEX:DATABASE')
@backup_options
@handle_errors
def download_command(token, environment, settings_path, engine_name):
    """Download the backup at INDEX:DATABASE (see the list command)."""
    backups = _backups(environment, settings_path, engine_name)
    _, filename = backups.download(token, progress=_progress)
    click.echo()
    click.echo(f"finished: {filename}")


@cli.command('restore')
@click.argument('token', metavar='INDEX:DATABASE')
@click.option('-y', '--yes', is_flag=True, help='Do not ask for confirmation.')
@backup_options
@handle_errors
def restore_command(token, yes, environment, settings_path, engine_name):
    """Download and apply a backup. WARNING: overwrites the current database."""
    backups = _backups(environment, settings_path, engine_name)
    if not yes:
        click.confirm(f"Restoring {token} overwrites the database. Continue?", abort=True)
    database = backups.restore(token, progress=_progress)
    click.echo()
    click.echo(f"restored: {database}")


@cli.command('clone')
@click.argument('database')
@backup_options
@handle_errors
def clone_command(database, environment, settings_path, engine_name):
    """Load the newest backup of DATABASE into its _staging database."""
    backups = _backups(environment, settings_path, engine_name)
    target = backups.clone(database, progress=_progress)
    click.echo()
    click.echo(f"cloned into: {target}")


@cli.command('backup')
@click.option('--no-cleanup', is_flag=True, help='Skip retention cleanup after the backup.')
@backup_options
@handle_errors
def backup_command(no_cleanup, environment, settings_path, engine_name):
    """Dump and upload every tracked database."""
    backups = _backups(environment, settings_path, engine_name)
    for key in backups.backup_all():
        click.echo(f"uploaded: {key}")
    if not no_cleanup:
        summary = backups.cleanup()
        click.echo(f"cleanup: {summary['deleted']} deleted, {summary['kept']} kept")


@cli.command('cleanup')
@click.option('--dry-run', is_flag=True, help='Only show what would be deleted.')
@backup_options
@handle_errors
def cleanup_command(dry_run, environment, settings_path, engine_name):
    """Delete backups outside the retention window."""
    backups = _backups(environment, settings_path, engine_name)
    summary = backups.cleanup(dry_run=dry_run)
    if dry_run:
        click.echo(f"cleanup (dry run): {summary['eligible']} to delete, {summary['kept']} kept")
    else:
        click.echo(
            f"cleanup: {summary['deleted']} deleted, {summary['skipped']} already gone, "
            f"{summary['kept']} kept"
        )


@cli.command('schedule')
@backup_options
@handle_errors
def schedule_command(environment, settings_path, engine_name):
    """Run backup and cleanup on the BACKUP_SCHEDULE cron expression."""
    from brbackup.scheduler import init_scheduler, start_scheduler

    # fail on bad settings now rather than at the first tick
    _backups(environment, settings_path, engine_name)

    init_scheduler(current_app._get_current_object(), environment, settings_path, engine_name)
    start_scheduler()


def main():
    """Console script entry point."""
    from brbackup import create_app
    cli(obj=ScriptInfo(create_app=create_app))
