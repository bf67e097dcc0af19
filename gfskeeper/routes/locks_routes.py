"""
Lock routes - view held job leases.
"""

from flask import Blueprint, jsonify

from gfskeeper.backup.locking import LockManager


bp = Blueprint('locks', __name__, url_prefix='/api/locks')


@bp.route('/', methods=['GET'])
def list_locks():
    """
    Get all job leases.

    Stale leases (expired, holder presumed dead) are flagged and will be
    reclaimed by the next run of the job.
    """
    return jsonify(LockManager().list_locks())
