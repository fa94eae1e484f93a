"""
Backup history routes - View backup execution history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta, timezone

from tarkeep.models import BackupHistory, BackupJob


bp = Blueprint('history', __name__, url_prefix='/api/history')

VALID_STATUSES = ['running', 'success', 'failed']


def _history_to_dict(record: BackupHistory, include_logs: bool = False) -> dict:
    data = {
        'id': record.id,
        'job_id': record.job_id,
        'job_name': record.job.name,
        'status': record.status,
        'trigger': record.trigger,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'backup_id': record.backup_id,
        'total_size': record.total_size,
        'failed_step': record.failed_step,
        'error_message': record.error_message,
        'has_logs': bool(record.logs)
    }
    if include_logs:
        data['logs'] = record.logs
    return data


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - job: Filter by job name
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    job_filter = request.args.get('job')
    days_filter = request.args.get('days', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupHistory.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupHistory.status == status_filter)

    if job_filter:
        query = query.join(BackupJob).filter(BackupJob.name == job_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days_filter)
        query = query.filter(BackupHistory.started_at >= cutoff_date)

    # Get total count before pagination
    total_count = query.count()

    history_records = query.order_by(
        BackupHistory.started_at.desc(), BackupHistory.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_history_to_dict(record) for record in history_records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:history_id>', methods=['GET'])
def get_history_detail(history_id):
    """
    Get one history record including its logs.
    """
    record = BackupHistory.query.get_or_404(history_id)

    data = _history_to_dict(record, include_logs=True)
    data['duration_seconds'] = (
        int((record.completed_at - record.started_at).total_seconds())
        if record.completed_at else None
    )
    return jsonify(data)
