"""
APScheduler configuration for scheduled backups.

Runs backup_all followed by cleanup on the BACKUP_SCHEDULE cron expression.
The job never overlaps itself, so the catalog is read and pruned by one
run at a time.
"""

import logging
from typing import Any, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from brbackup.backup.executor import create_backups
from brbackup.errors import BRBackupError

logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def run_scheduled_backup(environment: Optional[str] = None, settings_path: Optional[str] = None,
                         engine_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Back up every tracked database, then enforce retention.

    Settings are reloaded on every run so edits apply without a restart.
    Failures are logged and the scheduler keeps running.

    Returns:
        Dict with 'keys' uploaded and the cleanup 'summary', or None on failure
    """
    with flask_app.app_context():
        try:
            backups = create_backups(
                flask_app.config,
                environment=environment,
                settings_path=settings_path,
                engine_name=engine_name,
                engines=flask_app.extensions.get('brbackup_engines')
            )
            keys = backups.backup_all()
            summary = backups.cleanup()
        except BRBackupError as e:
            logger.error(f"Scheduled backup failed: {e}")
            return None

        logger.info(f"Scheduled backup complete: {len(keys)} uploaded, {summary['deleted']} deleted")
        return {'keys': keys, 'summary': summary}


def init_scheduler(app, environment: Optional[str] = None, settings_path: Optional[str] = None,
                   engine_name: Optional[str] = None):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        environment: Environment override passed to each run
        settings_path: Settings file override passed to each run
        engine_name: Engine override passed to each run
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    cron = app.config['BACKUP_SCHEDULE']
    trigger = CronTrigger.from_crontab(cron, timezone=timezone)

    # Store Flask app reference for use in the job thread
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=run_scheduled_backup,
        kwargs={'environment': environment, 'settings_path': settings_path, 'engine_name': engine_name},
        trigger=trigger,
        id='backup_and_cleanup',
        name='Backup and retention cleanup',
        replace_existing=True
    )
    logger.info(f"Scheduled backup and cleanup ({cron} {timezone})")

    return scheduler


def start_scheduler():
    """
    Start the scheduler; blocks until it is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


def stop_scheduler():
    """Stop the scheduler and forget it."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
    scheduler = None
    flask_app = None
