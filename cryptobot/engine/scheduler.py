"""APScheduler integration.

Runs the periodic engine jobs: the strategy control loop, portfolio
snapshots, the gateway watchdog and the daily market-data purge.
"""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cryptobot.config import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

CONTROL_LOOP_JOB = "control_loop"
PORTFOLIO_JOB = "portfolio_snapshot"
WATCHDOG_JOB = "gateway_watchdog"
PURGE_JOB = "market_data_purge"
CACHE_SWEEP_JOB = "cache_sweep"


def _add_job(func, trigger, job_id: str, name: str, args=None, **kwargs):
    scheduler.add_job(
        func,
        trigger=trigger,
        args=args or [],
        id=job_id,
        name=name,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
        **kwargs,
    )


def schedule_engine_jobs(runtime):
    """Register the engine jobs for a started runtime."""
    from cryptobot.engine.portfolio import record_portfolio_snapshot
    from cryptobot.engine.strategy_job import run_strategy_tick
    from cryptobot.services.market_data import purge_market_data

    _add_job(run_strategy_tick, IntervalTrigger(seconds=settings.control_loop_seconds),
             CONTROL_LOOP_JOB, "Strategy control loop", args=[runtime.context])
    _add_job(record_portfolio_snapshot, IntervalTrigger(seconds=settings.portfolio_snapshot_seconds),
             PORTFOLIO_JOB, "Portfolio snapshot", args=[runtime.client, runtime.cache],
             next_run_time=datetime.now(timezone.utc))
    _add_job(runtime.check_gateway_health, IntervalTrigger(seconds=settings.gateway_stale_seconds / 2),
             WATCHDOG_JOB, "Gateway watchdog")
    _add_job(purge_market_data, CronTrigger(hour=3, minute=0),
             PURGE_JOB, "Market data purge")
    _add_job(runtime.cache.purge_expired, IntervalTrigger(minutes=5),
             CACHE_SWEEP_JOB, "Cache sweep")
    logger.info(f"Scheduled {len(scheduler.get_jobs())} engine jobs "
                f"(control loop every {settings.control_loop_seconds}s)")


def start_scheduler(runtime):
    """Register the engine jobs and start the scheduler."""
    schedule_engine_jobs(runtime)
    if not scheduler.running:
        scheduler.start()
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler. Safe to call when it never started."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _next_run(job) -> str | None:
    # Jobs added before start() have no next_run_time attribute yet.
    next_run = getattr(job, "next_run_time", None)
    return str(next_run) if next_run else None


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
                "next_run": _next_run(j),
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
    }
