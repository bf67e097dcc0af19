"""
Command line entry points: flask backup run|verify|jobs|catalog|add-job.

`flask backup run` is the process-level entry point for cron or systemd
timers; its exit status is the run's exit code.
"""

import json
import signal
import sys
import threading

import click
from apscheduler.triggers.cron import CronTrigger
from flask.cli import AppGroup

from gfskeeper import db
from gfskeeper.models import ArtifactStatus, BackupJob, BackupRun
from gfskeeper.backup.catalog import Catalog
from gfskeeper.backup.executor import (
    execute_backup_job_by_name, verify_catalog,
    EXIT_OK, EXIT_CONFIG_ERROR, EXIT_VERIFICATION_FAILED
)
from gfskeeper.scheduler import resync_if_running


backup_cli = AppGroup('backup', help='Run and inspect backup jobs.')

COMPRESSION_FORMATS = ['tar.gz', 'tar.bz2', 'tar.xz', 'none']


def _get_job_or_exit(name: str) -> BackupJob:
    job = BackupJob.query.filter_by(name=name).first()
    if job is None:
        click.echo(f"Backup job not found: {name}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    return job


@backup_cli.command('run')
@click.argument('job_name')
@click.option('--timeout', type=click.IntRange(min=1), default=None,
              help='Cancel the run after this many seconds.')
def run_command(job_name, timeout):
    """Run one backup job now and exit with its exit code."""
    _get_job_or_exit(job_name)

    cancel_event = threading.Event()

    def _cancel(signum, frame):
        click.echo(f"Received signal {signum}, cancelling run...", err=True)
        cancel_event.set()

    previous = {sig: signal.signal(sig, _cancel) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        run = execute_backup_job_by_name(
            job_name,
            allow_disabled=True,
            cancel_event=cancel_event,
            timeout=timeout
        )
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    click.echo(run.summary)
    sys.exit(run.exit_code)


@backup_cli.command('verify')
@click.argument('job_name')
def verify_command(job_name):
    """Recompute digests of all VERIFIED artifacts of a job."""
    job = _get_job_or_exit(job_name)
    report = verify_catalog(job)

    for artifact_id in report['missing']:
        click.echo(f"MISSING     artifact {artifact_id}")
    for artifact_id in report['mismatched']:
        click.echo(f"MISMATCHED  artifact {artifact_id}")

    click.echo(
        f"job={job.name} checked={report['checked']} ok={len(report['ok'])} "
        f"missing={len(report['missing'])} mismatched={len(report['mismatched'])}"
    )

    if report['missing'] or report['mismatched']:
        sys.exit(EXIT_VERIFICATION_FAILED)
    sys.exit(EXIT_OK)


@backup_cli.command('jobs')
def jobs_command():
    """List backup jobs and their last run."""
    jobs = BackupJob.query.order_by(BackupJob.name).all()
    if not jobs:
        click.echo("No backup jobs configured")
        return

    for job in jobs:
        last_run = BackupRun.query.filter_by(job_id=job.id).order_by(BackupRun.started_at.desc()).first()
        state = 'enabled' if job.enabled else 'disabled'
        click.echo(f"{job.name}  [{state}]  {job.source_path}  cron={job.schedule_cron or '-'}")
        if last_run and last_run.summary:
            click.echo(f"    last: {last_run.summary}")


@backup_cli.command('catalog')
@click.argument('job_name')
@click.option('--status', type=click.Choice([s.value for s in ArtifactStatus]), default=None,
              help='Only show artifacts with this status.')
def catalog_command(job_name, status):
    """Print the artifact catalog of a job."""
    job = _get_job_or_exit(job_name)
    catalog = Catalog(job)

    entries = catalog.by_status(ArtifactStatus(status)) if status else catalog.entries()
    for artifact in entries:
        base = f" base={artifact.based_on_id}" if artifact.based_on_id else ''
        click.echo(
            f"{artifact.id:>5}  {artifact.created_at:%Y-%m-%d %H:%M:%S}  {artifact.tier:<7}  "
            f"{artifact.kind:<11}  {artifact.status:<8}  {artifact.location or '-'}{base}"
        )
    click.echo(f"{len(entries)} artifact(s)")


@backup_cli.command('add-job')
@click.argument('name')
@click.argument('source_path')
@click.option('--cron', default=None, help='Cron expression, e.g. "0 2 * * *".')
@click.option('--format', 'compression_format', type=click.Choice(COMPRESSION_FORMATS),
              default='tar.gz', show_default=True)
@click.option('--full-only', is_flag=True, help='Never produce incremental artifacts.')
@click.option('--daily', type=click.IntRange(min=1), default=None, help='Daily artifacts to keep.')
@click.option('--weekly', type=click.IntRange(min=1), default=None, help='Weekly artifacts to keep.')
@click.option('--monthly', type=click.IntRange(min=1), default=None, help='Monthly artifacts to keep.')
@click.option('--exclude', multiple=True, help='Glob pattern to exclude (repeatable).')
@click.option('--description', default='')
def add_job_command(name, source_path, cron, compression_format, full_only,
                    daily, weekly, monthly, exclude, description):
    """Create a backup job.

    A running scheduler picks up the --cron schedule on its next resync
    (SCHEDULER_RESYNC_SECONDS), or immediately when it runs in this process.
    """
    if BackupJob.query.filter_by(name=name).first():
        click.echo(f"Job name already exists: {name}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if BackupJob.query.filter_by(source_path=source_path).first():
        click.echo(f"Source path already has a job: {source_path}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if cron:
        try:
            CronTrigger.from_crontab(cron, timezone='UTC')
        except ValueError as e:
            click.echo(f"Invalid cron expression {cron!r}: {e}", err=True)
            sys.exit(EXIT_CONFIG_ERROR)

    job = BackupJob(
        name=name,
        description=description,
        enabled=True,
        source_path=source_path,
        exclude_patterns=json.dumps(list(exclude)) if exclude else None,
        compression_format=compression_format,
        schedule_cron=cron,
        incremental=not full_only,
        retention_daily=daily,
        retention_weekly=weekly,
        retention_monthly=monthly
    )
    db.session.add(job)
    db.session.commit()

    click.echo(f"Created backup job {job.name} (id={job.id})")
    if cron and resync_if_running():
        click.echo(f"Scheduled {job.name}: {cron}")
