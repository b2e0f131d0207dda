"""
APScheduler configuration for periodic backups.

The pipeline itself never depends on this module: it is one possible
trigger (`dbkeeper schedule`) next to cron or a systemd timer calling
`dbkeeper run-backup`. max_instances=1 stops this process from overlapping
runs; the run lock stops overlaps between processes.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dbkeeper.backup.executor import execute_backup
from dbkeeper.config import ConfigError


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'database_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler with the backup cron job.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    cron = app.config['BACKUP_SCHEDULE_CRON']
    trigger = CronTrigger.from_crontab(cron, timezone='UTC')

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
        timezone='UTC'
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=trigger,
        id=BACKUP_JOB_ID,
        name='Database Backup',
        replace_existing=True
    )

    logger.info("Scheduled database backup (%s UTC)", cron)
    return scheduler


def start_scheduler():
    """
    Start the APScheduler. Blocks until the scheduler is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.warning("APScheduler already running")
        return

    for job in scheduler.get_jobs():
        logger.info("  - %s: %s (trigger: %s)", job.id, job.name, job.trigger)

    scheduler.start()


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("APScheduler stopped")


def _execute_backup_wrapper():
    """
    Run one backup inside the Flask app context.

    Errors are logged rather than raised so the scheduler keeps firing.
    """
    with flask_app.app_context():
        try:
            report = execute_backup()
            logger.info("Scheduled backup finished with status: %s", report.status)
        except ConfigError as e:
            logger.error("Scheduled backup not started: %s", e)
        except Exception:
            logger.exception("Scheduled backup crashed")
