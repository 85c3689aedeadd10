"""
APScheduler configuration and job scheduling for Cloudkeeper.

Manages:
- Scheduled backups (one daily cron job per configured HH:MM)
- Manual backup and cleanup triggers
- Serialisation of runs: at most one backup or cleanup is active at a time
- The last RunResult, kept in memory for the status endpoint
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from cloudkeeper.backup.errors import BackupError
from cloudkeeper.backup.factory import build_executor, build_progress, build_retention_manager
from cloudkeeper.backup.models import BackupType, RunResult, RunStage
from cloudkeeper.backup.retention import RetentionResult
from cloudkeeper.notifications import build_notifier


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

_run_lock = threading.Lock()
_last_result: Optional[RunResult] = None
_last_finished_at: Optional[datetime] = None


def parse_schedule_time(value: str) -> Tuple[int, int]:
    """
    Parse an 'HH:MM' schedule entry.

    Raises:
        ValueError: If the entry is not a valid time of day
    """
    try:
        hour_text, minute_text = value.strip().split(':')
        hour, minute = int(hour_text), int(minute_text)
    except (AttributeError, ValueError):
        raise ValueError(f"Invalid schedule time: {value!r} (expected HH:MM)")

    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid schedule time: {value!r} (expected HH:MM)")
    return hour, minute


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

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores={'default': MemoryJobStore()},
        executors={'default': ThreadPoolExecutor(max_workers=2)},
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    for time_of_day in app.config.get('BACKUP_SCHEDULE') or []:
        try:
            hour, minute = parse_schedule_time(time_of_day)
        except ValueError as e:
            logger.error(f"Skipping schedule entry: {e}")
            continue

        scheduler.add_job(
            func=_scheduled_backup_wrapper,
            args=[time_of_day],
            trigger=CronTrigger(hour=hour, minute=minute),
            id=f"backup_{hour:02d}{minute:02d}",
            name=f"Scheduled backup {hour:02d}:{minute:02d}",
            replace_existing=True
        )
        logger.info(f"Backup scheduled daily at {hour:02d}:{minute:02d}")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started ({len(scheduler.get_jobs())} jobs)")
    else:
        logger.info("Scheduler already running")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def is_backup_running() -> bool:
    return _run_lock.locked()


def get_last_result() -> Optional[RunResult]:
    return _last_result


def get_last_finished_at() -> Optional[datetime]:
    return _last_finished_at


def _record_result(result: RunResult):
    global _last_result, _last_finished_at
    _last_result = result
    _last_finished_at = datetime.now(timezone.utc)


def run_backup(app, backup_type=BackupType.FULL, label: Optional[str] = None) -> Optional[RunResult]:
    """
    Run one backup synchronously, unless another run is active.

    Args:
        app: Flask app whose configuration drives the run
        backup_type: BackupType or its string value
        label: Text announced to the notifier

    Returns:
        The RunResult, or None when the run was skipped
    """
    if not _run_lock.acquire(blocking=False):
        logger.warning(f"Backup skipped, another run is active ({label or 'manual'})")
        return None

    try:
        with app.app_context():
            notifier = build_notifier(app.config)
            progress = build_progress(
                [notifier] if notifier else [],
                terminal=app.config.get('TERMINAL_PROGRESS', False),
            )

            if notifier:
                notifier.notify_started(label or 'Manual backup')

            try:
                executor = build_executor(app.config, progress)
            except BackupError as e:
                logger.error(f"Backup could not be configured: {e}")
                result = RunResult(
                    success=False,
                    backup_type=BackupType.FULL,
                    stage=RunStage.FAILED,
                    error=e
                )
                progress.error(f"Backup failed: {e}")
                progress.run_finished(result)
            else:
                result = executor.run(backup_type)

            _record_result(result)
            return result
    finally:
        _run_lock.release()


def run_cleanup(app) -> Optional[RetentionResult]:
    """
    Enforce the retention policy once, unless a run is active.

    Returns:
        RetentionResult, or None when skipped
    """
    if not _run_lock.acquire(blocking=False):
        logger.warning("Cleanup skipped, a backup run is active")
        return None

    try:
        with app.app_context():
            manager = build_retention_manager(
                app.config, build_progress(terminal=app.config.get('TERMINAL_PROGRESS', False))
            )
            result = manager.cleanup_remote()
            logger.info(f"Manual cleanup removed {result.deleted} of {result.selected} selected backups")
            return result
    finally:
        _run_lock.release()


def _scheduled_backup_wrapper(time_of_day: str):
    """Wrapper executed by APScheduler for the daily cron jobs."""
    logger.info(f"Scheduler executing backup for {time_of_day}")
    try:
        run_backup(flask_app, BackupType.FULL, label=f"Scheduled backup for {time_of_day}")
    except Exception as e:
        logger.exception(f"Scheduled backup for {time_of_day} failed: {e}")


def _manual_backup_wrapper(backup_type: str):
    try:
        run_backup(flask_app, backup_type, label=f"Manual backup ({backup_type})")
    except Exception as e:
        logger.exception(f"Manual backup failed: {e}")


def _manual_cleanup_wrapper():
    try:
        run_cleanup(flask_app)
    except Exception as e:
        logger.exception(f"Manual cleanup failed: {e}")


def trigger_backup_now(backup_type=None) -> str:
    """
    Manually trigger a backup immediately.

    Args:
        backup_type: 'full' | 'database' | 'files' (default full)

    Returns:
        ID of the one-time scheduler job

    Raises:
        ConfigError: If the backup type is invalid
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    resolved = BackupType.from_value(backup_type)
    now = datetime.now(timezone.utc)
    job_id = f"manual_{resolved.value}_{int(now.timestamp())}"

    # 1 second delay to avoid a race with the request that triggered it
    scheduler.add_job(
        func=_manual_backup_wrapper,
        args=[resolved.value],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {resolved.display_name}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {resolved.display_name}")
    return job_id


def trigger_cleanup_now() -> str:
    """Manually trigger a retention cleanup immediately."""
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"cleanup_{int(now.timestamp())}"
    scheduler.add_job(
        func=_manual_cleanup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name="Manual: cleanup",
        replace_existing=False
    )

    logger.info("Manually triggered cleanup")
    return job_id


def get_scheduled_jobs() -> List[dict]:
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
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
