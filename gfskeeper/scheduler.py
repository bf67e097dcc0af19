"""
APScheduler configuration and job scheduling for GFSKeeper.

Manages:
- Scheduled backup jobs (based on cron expressions)
- Starting the scheduler in the designated serving process only
- Periodic resync so jobs created by other processes get scheduled

Overlap between runs of the same job is prevented twice: APScheduler's
max_instances=1 inside one process, and the job lease across processes.
"""

import atexit
import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from gfskeeper import db
from gfskeeper.models import BackupJob
from gfskeeper.backup.executor import execute_backup_job

logger = logging.getLogger(__name__)


# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

RESYNC_JOB_ID = 'resync_backup_jobs'


def _count_jobs_in_database() -> int:
    """
    Count jobs in APScheduler's persistent job store.

    Used as a fallback to detect scheduler health from processes that do
    not own the scheduler (other gunicorn workers, the CLI).

    Returns:
        Number of jobs in database, or 0 if the job store table is missing
    """
    try:
        result = db.session.execute(
            text("SELECT COUNT(*) FROM apscheduler_jobs")
        ).scalar()
        return result or 0
    except SQLAlchemyError:
        db.session.rollback()
        return 0


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    # Configure job stores and executors
    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 3))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")

    jobs = scheduler.get_jobs()
    if jobs:
        logger.info(f"Loaded {len(jobs)} scheduled jobs:")
        for job in jobs:
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info("No scheduled jobs loaded")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def start_background_scheduler(app):
    """
    Initialize, start and populate the scheduler for a serving process.

    Honors SCHEDULER_WORKER: only the designated process runs scheduled jobs,
    so several gunicorn workers do not each fire the same cron entry.

    Returns:
        True if the scheduler was started in this process
    """
    if os.environ.get('SCHEDULER_WORKER', 'true').lower() != 'true':
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")
        return False

    app.logger.info("Initializing scheduler in this process...")
    init_scheduler(app)
    start_scheduler()

    with app.app_context():
        sync_backup_jobs()

    scheduler.add_job(
        func=_resync_wrapper,
        trigger='interval',
        seconds=app.config.get('SCHEDULER_RESYNC_SECONDS', 60),
        id=RESYNC_JOB_ID,
        name='Resync backup job schedules',
        replace_existing=True
    )

    atexit.register(stop_scheduler)
    app.logger.info("Scheduler initialized and started successfully")
    return True


def sync_backup_jobs():
    """
    Synchronize backup jobs from database to scheduler.

    This function should be called:
    - After app startup
    - After creating/updating/deleting backup jobs
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    backup_jobs = BackupJob.query.all()

    # Get current scheduled job IDs
    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for backup_job in backup_jobs:
        job_id = f"backup_{backup_job.id}"

        if backup_job.enabled and backup_job.schedule_cron:
            if job_id in scheduled_job_ids:
                _update_scheduled_job(backup_job)
                scheduled_job_ids.remove(job_id)
            else:
                _add_scheduled_job(backup_job)
        elif job_id in scheduled_job_ids:
            # Disabled or no schedule
            _remove_scheduled_job(backup_job.id)
            scheduled_job_ids.remove(job_id)

    # Remove any leftover scheduled jobs that don't exist in database
    for leftover_id in scheduled_job_ids:
        try:
            scheduler.remove_job(leftover_id)
            logger.info(f"Removed orphaned scheduled job: {leftover_id}")
        except JobLookupError:
            logger.debug(f"Orphaned scheduled job {leftover_id} already removed")


def _add_scheduled_job(backup_job: BackupJob):
    """
    Add a backup job to the scheduler.

    Args:
        backup_job: BackupJob instance
    """
    job_id = f"backup_{backup_job.id}"

    try:
        trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to schedule backup job {backup_job.name}: invalid cron {backup_job.schedule_cron!r}: {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_job.id],
        trigger=trigger,
        id=job_id,
        name=f"Backup: {backup_job.name}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job: {backup_job.name} ({backup_job.schedule_cron})")


def _update_scheduled_job(backup_job: BackupJob):
    """
    Update a scheduled backup job.

    Args:
        backup_job: BackupJob instance
    """
    job_id = f"backup_{backup_job.id}"

    job = scheduler.get_job(job_id)
    if not job:
        return

    try:
        new_trigger = CronTrigger.from_crontab(backup_job.schedule_cron, timezone='UTC')
    except ValueError as e:
        logger.error(f"Failed to update backup job {backup_job.name}: invalid cron {backup_job.schedule_cron!r}: {e}")
        return

    job.reschedule(trigger=new_trigger)
    job.modify(name=f"Backup: {backup_job.name}")
    logger.info(f"Updated scheduled backup job: {backup_job.name}")


def _remove_scheduled_job(backup_job_id: int):
    """
    Remove a backup job from the scheduler.

    Args:
        backup_job_id: BackupJob ID
    """
    job_id = f"backup_{backup_job_id}"

    try:
        scheduler.remove_job(job_id)
        logger.info(f"Removed scheduled backup job ID: {backup_job_id}")
    except JobLookupError:
        logger.warning(f"Scheduled backup job {backup_job_id} was already removed")


def _execute_backup_wrapper(job_id: int, allow_disabled: bool = False):
    """
    Wrapper function for executing backup jobs in scheduler context.

    Each scheduler thread runs with its own app context and database session.
    The run result is recorded on the BackupRun; exceptions are logged here
    because APScheduler would otherwise only report them as job errors.

    Args:
        job_id: BackupJob ID to execute
        allow_disabled: If True, allow execution of disabled jobs
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup job ID: {job_id}")
            run = execute_backup_job(job_id, allow_disabled=allow_disabled)
            logger.info(f"Backup job {job_id} finished: {run.summary}")
        except Exception:
            logger.exception(f"Scheduler backup job {job_id} failed")


def _resync_wrapper():
    """Periodic sync_backup_jobs() so schedules written by other processes are picked up."""
    with flask_app.app_context():
        try:
            sync_backup_jobs()
        except Exception:
            logger.exception("Scheduled resync of backup jobs failed")


def resync_if_running():
    """
    Sync schedules now when this process owns a running scheduler.

    Returns:
        True if a sync was performed
    """
    if scheduler is None or not scheduler.running:
        return False
    sync_backup_jobs()
    return True


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """
    Check if scheduler is running.

    In the scheduler-owning process this checks in-memory state; elsewhere it
    falls back to the job store in the database.

    Returns:
        True if scheduler is running or has scheduled jobs, False otherwise
    """
    if scheduler is not None and scheduler.running:
        return True

    return _count_jobs_in_database() > 0
