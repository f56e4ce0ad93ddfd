"""
APScheduler configuration for unattended backups.

Manages:
- Periodic backup (BACKUP_SCHEDULE_CRON)
- Periodic retention cleanup (CLEAN_SCHEDULE_CRON)

A single worker thread runs both jobs, so a backup and a clean never overlap
within this process.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dumpvault.backup.executor import run_backup, run_clean


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


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

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone
    )

    scheduler.add_job(
        func=_run_job,
        args=['backup'],
        trigger=CronTrigger.from_crontab(app.config['BACKUP_SCHEDULE_CRON'], timezone=timezone),
        id='backup',
        name='Database Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_run_job,
        args=['clean'],
        trigger=CronTrigger.from_crontab(app.config['CLEAN_SCHEDULE_CRON'], timezone=timezone),
        id='clean',
        name='Retention Cleanup',
        replace_existing=True
    )

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
        logger.info(f"APScheduler started (state={scheduler.state})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_job(kind: str):
    """
    Run a scheduled backup or clean inside the app context.

    Failures are logged; the next trigger retries.

    Args:
        kind: 'backup' or 'clean'
    """
    with flask_app.app_context():
        try:
            if kind == 'backup':
                file_name = run_backup(flask_app)
                logger.info(f"Scheduled backup stored {file_name}")
            elif kind == 'clean':
                summary = run_clean(flask_app)
                logger.info(
                    f"Scheduled clean deleted {len(summary['deleted'])} backups "
                    f"({len(summary['errors'])} errors)"
                )
            else:
                raise ValueError(f"Invalid job kind: {kind}")
        except Exception:
            logger.exception(f"Scheduled {kind} failed")


def get_scheduled_jobs() -> list:
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
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs
