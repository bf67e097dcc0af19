"""
Backup jobs routes - read-only job configuration and artifact catalogs.

Jobs are created with `flask backup add-job`; the HTTP API never mutates
the catalog.
"""

from flask import Blueprint, current_app, jsonify, request

from gfskeeper.models import ArtifactStatus, BackupJob, BackupRun
from gfskeeper.backup.catalog import Catalog
from gfskeeper.backup.policy import load_retention_policy, ConfigError


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')


def _job_to_dict(job: BackupJob) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'description': job.description,
        'enabled': job.enabled,
        'source_path': job.source_path,
        'compression_format': job.compression_format,
        'schedule_cron': job.schedule_cron,
        'incremental': job.incremental,
        'retention_daily': job.retention_daily,
        'retention_weekly': job.retention_weekly,
        'retention_monthly': job.retention_monthly,
        'created_at': job.created_at.isoformat(),
        'updated_at': job.updated_at.isoformat()
    }


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all backup jobs.

    Returns:
        JSON array of backup jobs
    """
    jobs = BackupJob.query.order_by(BackupJob.created_at.desc()).all()
    return jsonify([_job_to_dict(job) for job in jobs])


@bp.route('/<int:job_id>', methods=['GET'])
def get_job(job_id):
    """
    Get a single backup job by ID.

    Includes exclude patterns, the effective retention policy and the last run.
    """
    job = BackupJob.query.get_or_404(job_id)

    data = _job_to_dict(job)
    data['exclude_patterns'] = job.get_exclude_patterns()

    try:
        data['effective_retention'] = load_retention_policy(job, current_app.config).as_dict()
    except ConfigError as e:
        data['effective_retention'] = None
        data['config_error'] = str(e)

    last_run = BackupRun.query.filter_by(job_id=job.id).order_by(BackupRun.started_at.desc()).first()
    data['last_run'] = {
        'id': last_run.id,
        'status': last_run.status,
        'summary': last_run.summary,
        'started_at': last_run.started_at.isoformat()
    } if last_run else None

    return jsonify(data)


@bp.route('/<int:job_id>/catalog', methods=['GET'])
def get_catalog(job_id):
    """
    Get the artifact catalog of a job.

    Query params:
        - status: Only return artifacts with this status (PENDING/VERIFIED/FAILED/DELETED)
    """
    job = BackupJob.query.get_or_404(job_id)
    catalog = Catalog(job)

    status_filter = request.args.get('status')
    if status_filter:
        try:
            status = ArtifactStatus(status_filter.upper())
        except ValueError:
            return jsonify({'error': 'Invalid status filter'}), 400
        return jsonify({
            'job_id': job.id,
            'job_name': job.name,
            'source_path': job.source_path,
            'artifacts': [artifact.to_dict() for artifact in catalog.by_status(status)]
        })

    return jsonify(catalog.to_dict())
