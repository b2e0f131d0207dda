"""
Command line interface.

    dbkeeper run-backup     run one backup now (exit status 1 if it failed)
    dbkeeper schedule       run backups on BACKUP_SCHEDULE_CRON until stopped
    dbkeeper history        show recent runs
    dbkeeper check          validate configuration and bucket access
"""

import signal
import sys

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from dbkeeper.backup.executor import execute_backup
from dbkeeper.backup.report import exit_code_for, RUN_FAILED, DEGRADED
from dbkeeper.backup.storage import S3Storage, RemoteStorageError, UploadError
from dbkeeper.config import BackupSettings, ConfigError

CONFIG_ERROR_EXIT = 2


def _terminate(signum, frame):
    # Unwind through the executor's finally blocks so the lock is released
    raise SystemExit(128 + signum)


def install_sigterm_handler():
    signal.signal(signal.SIGTERM, _terminate)


@click.command('run-backup')
@with_appcontext
def run_backup_command():
    """Run one backup (dump, verify, prune, upload)."""
    install_sigterm_handler()

    try:
        report = execute_backup()
    except ConfigError as e:
        click.echo(str(e), err=True)
        sys.exit(CONFIG_ERROR_EXIT)

    if report.status == RUN_FAILED:
        click.echo(f"Backup failed: {report.error}", err=True)
    elif report.status == DEGRADED:
        failed = [s.name for s in report.stages if s.status != 'ok']
        click.echo(f"Backup degraded: {', '.join(failed)} did not complete", err=True)

    sys.exit(exit_code_for(report.status))


@click.command('schedule')
@with_appcontext
def schedule_command():
    """Run backups on the configured cron schedule (blocks)."""
    from dbkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler

    try:
        BackupSettings.from_config(current_app.config)
    except ConfigError as e:
        click.echo(str(e), err=True)
        sys.exit(CONFIG_ERROR_EXIT)

    try:
        init_scheduler(current_app._get_current_object())
    except ValueError as e:
        click.echo(f"Invalid BACKUP_SCHEDULE_CRON: {e}", err=True)
        sys.exit(CONFIG_ERROR_EXIT)

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()


@click.command('history')
@click.option('--limit', default=20, show_default=True, help='Number of runs to show.')
@with_appcontext
def history_command(limit):
    """Show recent backup runs."""
    from dbkeeper.models import BackupRun

    limit = max(1, min(limit, 200))
    runs = BackupRun.query.order_by(BackupRun.started_at.desc()).limit(limit).all()

    if not runs:
        click.echo("No backup runs recorded")
        return

    for run in runs:
        size = f"{run.file_size_bytes / 1024 / 1024:.2f} MB" if run.file_size_bytes else '-'
        click.echo(
            f"{run.started_at:%Y-%m-%d %H:%M:%S}  {run.status:<8}  "
            f"{run.artifact_name or '-'}  {size}  {run.error_message or ''}".rstrip()
        )


@click.command('check')
@with_appcontext
def check_command():
    """Validate configuration and object storage access."""
    try:
        settings = BackupSettings.from_config(current_app.config)
    except ConfigError as e:
        for problem in e.problems:
            click.echo(f"config: {problem}", err=True)
        sys.exit(CONFIG_ERROR_EXIT)

    try:
        S3Storage(
            settings.location,
            max_attempts=settings.upload_max_attempts,
            backoff_seconds=settings.upload_backoff_seconds,
            connect_timeout=settings.s3_connect_timeout,
            read_timeout=settings.s3_read_timeout
        ).test_connection()
    except (RemoteStorageError, UploadError) as e:
        click.echo(f"storage: {e}", err=True)
        sys.exit(1)

    click.echo(f"OK: {settings.credentials.engine} -> s3://{settings.location.bucket}/{settings.location.key_prefix}")


def create_cli_app():
    from dbkeeper import create_app
    return create_app()


main = FlaskGroup(
    name='dbkeeper',
    create_app=create_cli_app,
    add_default_commands=False,
    help='Database backup and retention.'
)
