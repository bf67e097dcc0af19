"""
Dashboard routes - Overview and statistics endpoints.
"""

from flask import Blueprint, jsonify
from sqlalchemy import func

from gfskeeper import db
from gfskeeper.models import Artifact, ArtifactStatus, BackupJob, BackupRun, JobLock
from gfskeeper.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
def get_overview():
    """
    Get dashboard overview statistics.

    Returns:
        JSON with overview stats:
        - total_jobs: Total number of backup jobs
        - active_jobs: Number of enabled backup jobs
        - active_locks: Number of held job leases
        - artifacts: Artifact counts by status
        - verified_size_mb: Total size of VERIFIED artifacts
        - last_run: Most recent finished run
        - scheduler_status: Scheduler running status
    """
    total_jobs = BackupJob.query.count()
    active_jobs = BackupJob.query.filter_by(enabled=True).count()

    artifact_counts = {status.value: 0 for status in ArtifactStatus}
    rows = db.session.query(Artifact.status, func.count(Artifact.id)).group_by(Artifact.status).all()
    for status, count in rows:
        artifact_counts[status] = count

    verified_bytes = db.session.query(
        func.sum(Artifact.size_bytes)
    ).filter(
        Artifact.status == ArtifactStatus.VERIFIED.value
    ).scalar() or 0

    last_run = BackupRun.query.filter(
        BackupRun.completed_at.isnot(None)
    ).order_by(BackupRun.completed_at.desc()).first()

    last_run_info = None
    if last_run:
        last_run_info = {
            'id': last_run.id,
            'job_name': last_run.job.name,
            'status': last_run.status,
            'exit_code': last_run.exit_code,
            'summary': last_run.summary,
            'completed_at': last_run.completed_at.isoformat()
        }

    return jsonify({
        'total_jobs': total_jobs,
        'active_jobs': active_jobs,
        'active_locks': JobLock.query.count(),
        'artifacts': artifact_counts,
        'verified_size_mb': round(verified_bytes / 1024 / 1024, 2),
        'last_run': last_run_info,
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/scheduled-jobs', methods=['GET'])
def get_scheduled_jobs_info():
    """
    Get information about currently scheduled jobs.

    Returns:
        JSON array of scheduled jobs with next run times
    """
    return jsonify(get_scheduled_jobs())
