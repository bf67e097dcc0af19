"""
Run history routes - View backup run records and their logs.
"""

from flask import Blueprint, jsonify, request

from gfskeeper.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/api/runs')

RUN_STATUSES = ['running', 'done', 'skipped', 'failed']


def _run_to_dict(record: BackupRun, include_logs: bool = False) -> dict:
    data = {
        'id': record.id,
        'job_id': record.job_id,
        'job_name': record.job.name,
        'status': record.status,
        'state': record.state,
        'failure_stage': record.failure_stage,
        'tier': record.tier,
        'kind': record.kind,
        'artifact_id': record.artifact_id,
        'verification': record.verification,
        'deleted_count': record.deleted_count,
        'deferred_count': record.deferred_count,
        'sync_result': record.sync_result,
        'exit_code': record.exit_code,
        'summary': record.summary,
        'error_message': record.error_message,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
    }

    if include_logs:
        duration_seconds = None
        if record.completed_at:
            duration_seconds = int((record.completed_at - record.started_at).total_seconds())
        data['duration_seconds'] = duration_seconds
        data['logs'] = record.logs
    else:
        data['has_logs'] = bool(record.logs)

    return data


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/done/skipped/failed)
        - job_id: Filter by job ID
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    job_id_filter = request.args.get('job_id', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(0, offset)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if job_id_filter:
        query = query.filter(BackupRun.job_id == job_id_filter)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_run_to_dict(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get detailed information for a specific run, including logs.

    Args:
        run_id: BackupRun ID
    """
    record = BackupRun.query.get_or_404(run_id)
    return jsonify(_run_to_dict(record, include_logs=True))
