"""
Backup jobs routes - CRUD operations, job execution and backup records.
"""

from flask import Blueprint, jsonify, request

from tarkeep import db
from tarkeep.models import BackupJob, BackupDirectory, BackupHistory
from tarkeep.backup import jobs as backup_jobs
from tarkeep.backup.errors import BackupRunError, ConfigurationError
from tarkeep.backup.metadata import record_to_dict
from tarkeep.backup.types import STORAGE_KINDS


bp = Blueprint('jobs', __name__, url_prefix='/api/jobs')

RETENTION_FIELDS = {
    'keep_days': 'retention_keep_days',
    'keep_count': 'retention_keep_count',
    'keep_monthly': 'retention_keep_monthly',
}

SIMPLE_FIELDS = (
    'description', 'enabled', 'storage_kind', 'storage_path', 'mount_point',
    'skip_quiesce', 'skip_remote'
)


def _job_to_dict(job: BackupJob) -> dict:
    return {
        'id': job.id,
        'name': job.name,
        'description': job.description,
        'enabled': job.enabled,
        'directories': [
            {'path': d.path, 'name': d.name, 'compression': d.compression}
            for d in job.directories
        ],
        'retention': {key: getattr(job, column) for key, column in RETENTION_FIELDS.items()},
        'storage_kind': job.storage_kind,
        'storage_path': job.storage_path,
        'mount_point': job.mount_point,
        'schedule': {
            'interval': job.schedule_interval,
            'enabled': job.schedule_enabled
        },
        'skip_quiesce': job.skip_quiesce,
        'skip_remote': job.skip_remote,
        'created_at': job.created_at.isoformat(),
        'updated_at': job.updated_at.isoformat()
    }


def _apply_job_data(job: BackupJob, data: dict):
    """
    Copy request fields onto a job row.

    Raises:
        ConfigurationError: If a field has an invalid value
    """
    for field in SIMPLE_FIELDS:
        if field in data:
            setattr(job, field, data[field])

    if 'storage_kind' in data and data['storage_kind'] not in STORAGE_KINDS:
        raise ConfigurationError(f"Storage kind must be one of {list(STORAGE_KINDS)}")

    if 'directories' in data:
        directories = data['directories'] or []
        if not isinstance(directories, list):
            raise ConfigurationError('Directories must be a list')
        job.directories = [
            BackupDirectory(
                position=position,
                path=(entry or {}).get('path', ''),
                name=(entry or {}).get('name', ''),
                compression=(entry or {}).get('compression', True)
            )
            for position, entry in enumerate(directories)
        ]

    retention = data.get('retention') or {}
    for key, column in RETENTION_FIELDS.items():
        if key in retention:
            try:
                setattr(job, column, int(retention[key]))
            except (TypeError, ValueError):
                raise ConfigurationError(f"Retention {key} must be an integer")

    schedule = data.get('schedule') or {}
    if 'interval' in schedule:
        job.schedule_interval = schedule['interval']
    if 'enabled' in schedule:
        job.schedule_enabled = schedule['enabled']


def _error(message, status):
    return jsonify({'error': message}), status


@bp.route('/', methods=['GET'])
def list_jobs():
    """
    Get list of all backup jobs.

    Returns:
        JSON array of backup jobs
    """
    jobs = BackupJob.query.order_by(BackupJob.name).all()
    return jsonify([_job_to_dict(job) for job in jobs])


@bp.route('/<job_name>', methods=['GET'])
def get_job(job_name):
    job = BackupJob.query.filter_by(name=job_name).first_or_404()
    return jsonify(_job_to_dict(job))


@bp.route('/', methods=['POST'])
def create_job():
    """
    Create a new backup job.

    Request body:
        - name: Job name (required)
        - directories: List of {path, name, compression} (required)
        - description, enabled, storage_kind, storage_path, mount_point,
          skip_quiesce, skip_remote (optional)
        - retention: {keep_days, keep_count, keep_monthly} (optional)
        - schedule: {interval, enabled} (optional)

    Returns:
        JSON with created job details
    """
    data = request.get_json(silent=True) or {}

    if not data.get('name'):
        return _error('Job name is required', 400)

    # Check if job name already exists
    if BackupJob.query.filter_by(name=data['name']).first():
        return _error('Job name already exists', 400)

    job = BackupJob(name=data['name'])

    try:
        _apply_job_data(job, data)
        job.to_config().validate()
    except ConfigurationError as e:
        return _error(str(e), 400)

    db.session.add(job)
    db.session.commit()

    return jsonify(_job_to_dict(job)), 201


@bp.route('/<job_name>', methods=['PUT'])
def update_job(job_name):
    """
    Update an existing backup job.

    Request body: Same as create_job (all fields optional)
    """
    job = BackupJob.query.filter_by(name=job_name).first_or_404()
    data = request.get_json(silent=True) or {}

    if 'name' in data and data['name'] != job.name:
        # Check if new name conflicts with another job
        if BackupJob.query.filter_by(name=data['name']).first():
            return _error('Job name already exists', 400)
        job.name = data['name']

    try:
        _apply_job_data(job, data)
        job.to_config().validate()
    except ConfigurationError as e:
        db.session.rollback()
        return _error(str(e), 400)

    db.session.commit()
    return jsonify(_job_to_dict(job))


@bp.route('/<job_name>', methods=['DELETE'])
def delete_job(job_name):
    """
    Delete a backup job.

    Backups already written to storage are left in place.
    """
    job = BackupJob.query.filter_by(name=job_name).first_or_404()

    # Delete job (cascade will delete directories and history)
    db.session.delete(job)
    db.session.commit()

    return jsonify({'message': 'Backup job deleted successfully'})


@bp.route('/<job_name>/run', methods=['POST'])
def run_job_now(job_name):
    """
    Run a backup job immediately and wait for it to finish.

    Returns:
        JSON with the created backup record
    """
    BackupJob.query.filter_by(name=job_name).first_or_404()

    try:
        record = backup_jobs.run_job(job_name, trigger='manual')
    except ConfigurationError as e:
        return _error(str(e), 400)
    except BackupRunError as e:
        return jsonify({'error': str(e), 'step': e.step.value}), 500

    return jsonify(record_to_dict(record)), 201


@bp.route('/<job_name>/records', methods=['GET'])
def get_job_records(job_name):
    """
    List the backups stored for a job, newest first.
    """
    BackupJob.query.filter_by(name=job_name).first_or_404()

    try:
        records = backup_jobs.list_records(job_name)
    except ConfigurationError as e:
        return _error(str(e), 400)

    return jsonify([record_to_dict(r) for r in reversed(records)])


@bp.route('/<job_name>/cleanup', methods=['POST'])
def cleanup_job(job_name):
    """
    Apply the job's retention policy.

    Query params:
        - dry_run: If true, only report what would be deleted
    """
    BackupJob.query.filter_by(name=job_name).first_or_404()
    dry_run = request.args.get('dry_run', 'false').lower() == 'true'

    try:
        result = backup_jobs.cleanup(job_name, dry_run=dry_run)
    except ConfigurationError as e:
        return _error(str(e), 400)

    return jsonify({
        'dry_run': dry_run,
        'selected': result.selected,
        'deleted': result.deleted,
        'failed': result.failed
    })


@bp.route('/<job_name>/history', methods=['GET'])
def get_job_history(job_name):
    """
    Get backup history for a specific job.

    Query params:
        - limit: Max number of records (default: 50)
    """
    job = BackupJob.query.filter_by(name=job_name).first_or_404()

    limit = min(request.args.get('limit', 50, type=int), 200)

    history = BackupHistory.query.filter_by(job_id=job.id).order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).all()

    return jsonify([
        {
            'id': record.id,
            'status': record.status,
            'trigger': record.trigger,
            'started_at': record.started_at.isoformat(),
            'completed_at': record.completed_at.isoformat() if record.completed_at else None,
            'backup_id': record.backup_id,
            'total_size': record.total_size,
            'failed_step': record.failed_step,
            'error_message': record.error_message
        }
        for record in history
    ])
