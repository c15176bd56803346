"""
APScheduler configuration and job scheduling for remotebackup.

Manages:
- Scheduled host backups (cron expressions from a hosts file)
- Manual triggers

Each host gets its own job; jobs for different hosts may run at the same
time, a host never overlaps with itself (max_instances=1 plus the host lock).
"""

import json
import time
import logging
from datetime import datetime, timedelta, timezone
from typing import List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from remotebackup.backup.executor import execute_backup

logger = logging.getLogger(__name__)

# Global scheduler instance and the settings jobs run with
scheduler = None
scheduler_settings = None


def load_hosts(path) -> List[dict]:
    """
    Load the hosts file.

    Format::

        {"hosts": [{"hostname": "web1", "port": 22, "schedule": "0 2 * * *", "enabled": true}]}

    Returns:
        List of host dicts with defaults filled in

    Raises:
        ValueError: If the file is malformed
    """
    with open(path, 'r') as f:
        data = json.load(f)

    if not isinstance(data, dict) or not isinstance(data.get('hosts'), list):
        raise ValueError(f"Hosts file {path} must contain a 'hosts' list")

    hosts = []
    for entry in data['hosts']:
        if not isinstance(entry, dict) or not entry.get('hostname'):
            raise ValueError(f"Invalid host entry in {path}: {entry!r}")
        hosts.append({
            'hostname': entry['hostname'],
            'port': int(entry.get('port', 22)),
            'schedule': entry.get('schedule'),
            'enabled': bool(entry.get('enabled', True))
        })
    return hosts


def init_scheduler(settings: dict):
    """
    Initialize and configure APScheduler.

    Args:
        settings: Settings dict used for every scheduled run
    """
    global scheduler, scheduler_settings

    if scheduler is not None:
        return scheduler

    scheduler_settings = settings

    executors = {
        'default': ThreadPoolExecutor(max_workers=settings.get('SCHEDULER_MAX_WORKERS', 3))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=settings.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    return scheduler


def start_scheduler():
    """Start the APScheduler."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state}, running={scheduler.running})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_backup_jobs(hosts: List[dict]):
    """
    Synchronize host entries to scheduler jobs.

    Enabled hosts with a schedule are added or rescheduled; jobs for hosts
    that are gone or disabled are removed.

    Args:
        hosts: Host dicts as returned by load_hosts()
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    scheduled_job_ids = {job.id for job in scheduler.get_jobs() if job.id.startswith('backup_')}

    for host in hosts:
        job_id = f"backup_{host['hostname']}"

        if host['enabled'] and host['schedule']:
            _add_scheduled_job(host)
            scheduled_job_ids.discard(job_id)
        elif job_id in scheduled_job_ids:
            _remove_scheduled_job(host['hostname'])
            scheduled_job_ids.discard(job_id)

    # Remove any leftover jobs for hosts no longer in the file
    for leftover_id in scheduled_job_ids:
        scheduler.remove_job(leftover_id)
        logger.info(f"Removed orphaned scheduled job: {leftover_id}")


def _add_scheduled_job(host: dict):
    """
    Add (or replace) the scheduler job for a host.

    Args:
        host: Host dict
    """
    global scheduler

    job_id = f"backup_{host['hostname']}"

    try:
        trigger = CronTrigger.from_crontab(host['schedule'], timezone='UTC')
    except ValueError as e:
        logger.error(f"Invalid schedule for {host['hostname']} ({host['schedule']}): {e}")
        return

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[host['hostname'], host['port']],
        trigger=trigger,
        id=job_id,
        name=f"Backup: {host['hostname']}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup of {host['hostname']} ({host['schedule']})")


def _remove_scheduled_job(hostname: str):
    """Remove the scheduler job for a host."""
    global scheduler

    scheduler.remove_job(f"backup_{hostname}")
    logger.info(f"Removed scheduled backup of {hostname}")


def _execute_backup_wrapper(hostname: str, port: int = 22):
    """
    Run one backup in a scheduler worker thread.

    Failures are logged; nothing propagates into APScheduler.
    """
    global scheduler_settings

    logger.info(f"Scheduler executing backup of {hostname}:{port}")
    try:
        result = execute_backup(hostname, port, settings=scheduler_settings)
        logger.info(f"Backup of {hostname} finished with status: {result.status}")
    except Exception:
        logger.exception(f"Scheduled backup of {hostname} failed")


def trigger_backup_now(hostname: str, port: int = 22):
    """
    Manually trigger a backup immediately.

    Args:
        hostname: Host to back up
        port: ssh port of the host
    """
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    # 1 second delay to avoid racing scheduler start-up
    now = datetime.now(timezone.utc)
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[hostname, port],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{hostname}_{int(now.timestamp())}",
        name=f"Manual: {hostname}",
        replace_existing=False
    )

    logger.info(f"Manually triggered backup of {hostname}")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    global scheduler

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


def is_scheduler_running() -> bool:
    """Check if scheduler is running."""
    global scheduler
    return scheduler is not None and scheduler.running


def run_forever(settings: dict, hosts_file: str, poll_seconds: float = 1.0):
    """
    Schedule every host from hosts_file and block until interrupted.

    Args:
        settings: Settings dict
        hosts_file: Path to the JSON hosts file
        poll_seconds: How often to check the scheduler is still alive
    """
    hosts = load_hosts(hosts_file)
    init_scheduler(settings)
    sync_backup_jobs(hosts)
    start_scheduler()

    try:
        while is_scheduler_running():
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down scheduler")
    finally:
        stop_scheduler()
