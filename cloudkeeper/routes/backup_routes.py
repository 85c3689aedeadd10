"""
Backup routes - manual triggers, status and remote listing.
"""

from flask import Blueprint, current_app, jsonify, request

from cloudkeeper.auth import require_api_token
from cloudkeeper.backup.errors import BackupError, ConfigError
from cloudkeeper.backup.factory import build_retention_manager
from cloudkeeper.backup.models import BackupType, bytes_to_mb
from cloudkeeper.scheduler import (
    get_last_finished_at, get_last_result, get_scheduled_jobs, is_backup_running,
    is_scheduler_running, trigger_backup_now, trigger_cleanup_now
)


bp = Blueprint('backup', __name__, url_prefix='/api/backup')


@bp.route('/run', methods=['POST'])
@require_api_token
def run_backup():
    """
    Trigger a backup immediately.

    Request JSON:
        type: 'full' | 'database' | 'files' (optional, default 'full')

    Returns:
        202 with the scheduled job id, 400 on invalid type, 409 if a run is
        active, 503 if the scheduler is not running in this process
    """
    data = request.get_json(silent=True) or {}

    try:
        backup_type = BackupType.from_value(data.get('type'))
    except ConfigError as e:
        return jsonify({'error': str(e)}), 400

    if is_backup_running():
        return jsonify({'error': 'A backup is already running'}), 409

    try:
        job_id = trigger_backup_now(backup_type.value)
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'message': f"Backup triggered: {backup_type.display_name}",
        'job_id': job_id,
        'type': backup_type.value
    }), 202


@bp.route('/cleanup', methods=['POST'])
@require_api_token
def run_cleanup():
    """Trigger a retention cleanup immediately."""
    if is_backup_running():
        return jsonify({'error': 'A backup is already running'}), 409

    try:
        job_id = trigger_cleanup_now()
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({'message': 'Cleanup triggered', 'job_id': job_id}), 202


@bp.route('/status', methods=['GET'])
@require_api_token
def get_status():
    """
    Get scheduler state and the result of the last run.

    Returns:
        JSON with running flags, last result and next scheduled runs
    """
    last_result = get_last_result()
    last_finished_at = get_last_finished_at()

    return jsonify({
        'backup_running': is_backup_running(),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'last_result': last_result.to_dict() if last_result else None,
        'last_finished_at': last_finished_at.isoformat() if last_finished_at else None,
        'storage_backend': current_app.config.get('STORAGE_BACKEND'),
        'jobs': get_scheduled_jobs()
    })


@bp.route('/list', methods=['GET'])
@require_api_token
def list_backups():
    """
    List backups in the remote folder, newest first.

    Query params:
        limit: Maximum number of entries returned (default 10)

    Returns:
        JSON with the total count and the most recent entries
    """
    try:
        limit = max(int(request.args.get('limit', 10)), 0)
    except ValueError:
        return jsonify({'error': 'limit must be an integer'}), 400

    try:
        entries = build_retention_manager(current_app.config).list_backups()
    except BackupError as e:
        current_app.logger.error(f"Failed to list remote backups: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify({
        'total': len(entries),
        'backups': [
            {
                'id': entry.id,
                'name': entry.name,
                'created_at': entry.created_at.isoformat(),
                'size_bytes': entry.size_bytes,
                'size_mb': bytes_to_mb(entry.size_bytes)
            }
            for entry in entries[:limit]
        ]
    })


@bp.route('/schedule', methods=['GET'])
@require_api_token
def get_schedule():
    """Get the configured schedule and next run times."""
    return jsonify({
        'times': current_app.config.get('BACKUP_SCHEDULE') or [],
        'timezone': current_app.config.get('SCHEDULER_TIMEZONE'),
        'jobs': get_scheduled_jobs()
    })
