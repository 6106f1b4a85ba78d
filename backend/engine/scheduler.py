"""APScheduler integration for FastAPI.

Runs the periodic automation and broker sync sweeps.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

AUTOMATION_JOB_ID = "paper_automation"
BROKER_SYNC_JOB_ID = "broker_sync"


def _add_sweep_job(job_id: str, name: str, func, interval_seconds: int):
    """Add or replace an interval sweep. A non-positive interval disables it."""
    if scheduler.get_job(job_id):
        scheduler.remove_job(job_id)
    if interval_seconds <= 0:
        logger.info(f"{name} disabled")
        return

    scheduler.add_job(
        func,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )
    logger.info(f"Scheduled {name} every {interval_seconds}s")


def start_scheduler():
    """Register the sweeps and start the scheduler."""
    from backend.engine.sweeps import run_automation_sweep, run_broker_sync_sweep

    _add_sweep_job(
        AUTOMATION_JOB_ID, "Paper automation sweep",
        run_automation_sweep, settings.automation_interval_seconds,
    )
    _add_sweep_job(
        BROKER_SYNC_JOB_ID, "Broker sync sweep",
        run_broker_sync_sweep, settings.broker_sync_interval_seconds,
    )
    scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
