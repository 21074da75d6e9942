"""
APScheduler configuration and backup scheduling for redis-vault.

Backups run on wall-clock boundaries aligned to the Unix epoch: with a one
hour interval they fire on the hour, whenever the process was started.

Manages:
- The initial delay before the first backup
- The recurring backup job
- One-shot runs (--once)
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from redis_vault.config import ConfigError
from redis_vault.utils.durations import format_duration


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'redis_backup'

# Global scheduler instance and the executor it drives
scheduler = None
backup_executor = None


def seconds_until_next_tick(interval_seconds: int, now: Optional[float] = None) -> int:
    """
    Seconds from now until the next interval boundary since the Unix epoch.

    Example: interval 3600 at epoch second 7230 -> 3570.

    Raises:
        ConfigError: If the interval is not positive
    """
    if interval_seconds <= 0:
        raise ConfigError(f"Backup interval must be positive, got {interval_seconds}s")

    if now is None:
        now = time.time()

    return interval_seconds - int(now) % interval_seconds


def next_tick(interval_seconds: int, now: Optional[float] = None) -> datetime:
    """Datetime (UTC) of the next epoch-aligned interval boundary."""
    if now is None:
        now = time.time()

    wait = seconds_until_next_tick(interval_seconds, now)
    return datetime.fromtimestamp(int(now) + wait, tz=timezone.utc)


def run_backup_cycle(executor=None) -> bool:
    """
    Run one backup cycle, logging instead of raising on failure.

    A failed cycle must not stop the scheduler; the next tick retries.

    Returns:
        True if the cycle completed without error
    """
    executor = executor or backup_executor
    if executor is None:
        raise RuntimeError("Scheduler not initialized")

    try:
        key = executor.run_cycle()
    except Exception as e:
        logger.exception(f"Backup failed: {e}")
        return False

    if key:
        logger.debug(f"Backup cycle completed successfully: {key}")
    else:
        logger.debug("Backup cycle completed without upload")
    return True


def init_scheduler(executor, interval: timedelta, now: Optional[float] = None):
    """
    Initialize and configure APScheduler.

    Args:
        executor: BackupExecutor to run on every tick
        interval: Time between backups
        now: Current Unix time (for tests)

    Returns:
        The configured BackgroundScheduler
    """
    global scheduler, backup_executor

    if scheduler is not None:
        return scheduler

    interval_seconds = int(interval.total_seconds())
    first_run = next_tick(interval_seconds, now)

    backup_executor = executor

    executors = {
        # One worker: backup cycles never overlap
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine missed runs into one
        'max_instances': 1,
        'misfire_grace_time': 300
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=run_backup_cycle,
        trigger=IntervalTrigger(seconds=interval_seconds, start_date=first_run, timezone='UTC'),
        id=BACKUP_JOB_ID,
        name=f"Redis backup every {format_duration(interval)}",
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after init_scheduler().
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        for job in get_scheduled_jobs():
            logger.info(f"Next backup at {job['next_run'] or 'N/A'}")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler, letting a running backup finish."""
    global scheduler, backup_executor

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    scheduler = None
    backup_executor = None


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
        next_run_time = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run_time.isoformat() if next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if the scheduler is running."""
    return scheduler is not None and scheduler.running


def run(executor, interval: timedelta, initial_delay: timedelta, once: bool = False,
        stop_event: Optional[threading.Event] = None) -> bool:
    """
    Run backups until stopped, or exactly once.

    Waits for initial_delay first so a freshly started Redis can finish its
    replication handshake before the first role check.

    Args:
        executor: BackupExecutor
        interval: Time between backups
        initial_delay: Wait before scheduling the first backup
        once: Run a single cycle immediately after the initial delay and return
        stop_event: Set to stop waiting/scheduling (e.g. from a signal handler)

    Returns:
        False if a one-shot cycle failed, True otherwise

    Raises:
        ConfigError: If the interval is not positive
    """
    stop_event = stop_event or threading.Event()

    interval_seconds = int(interval.total_seconds())
    if interval_seconds <= 0:
        raise ConfigError(f"Backup interval must be positive, got {interval}")

    if initial_delay.total_seconds() > 0:
        logger.info(
            f"Initially waiting for {format_duration(initial_delay)} to allow for Redis to setup replication"
        )
        if stop_event.wait(initial_delay.total_seconds()):
            logger.info("Stopped during initial delay")
            return True

    if once:
        return run_backup_cycle(executor)

    init_scheduler(executor, interval)
    start_scheduler()

    try:
        stop_event.wait()
    finally:
        stop_scheduler()

    return True
