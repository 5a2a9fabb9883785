"""
APScheduler integration for FastAPI.

Runs build processing in-process when no dedicated `appforge worker`
process is deployed.

Jobs:
- Build worker tick: drains queued build jobs (every worker_poll_seconds)
- Retention: purges finished jobs and prunes old artifacts (every interval_hours)
"""

import asyncio
from typing import Any

from apscheduler import AsyncScheduler, ConflictPolicy
from apscheduler.datastores.memory import MemoryDataStore
from apscheduler.triggers.interval import IntervalTrigger

from appforge.config import get_config, get_settings
from appforge.core.logging import get_logger

logger = get_logger(__name__)

# Global scheduler instance
scheduler: AsyncScheduler | None = None

# Ticks may outlast their interval while a build runs
_tick_lock = asyncio.Lock()


async def build_worker_job() -> None:
    """Process queued build jobs until the queue is empty."""
    from appforge.dependencies import get_build_worker

    if _tick_lock.locked():
        logger.debug("build_worker_tick_skipped_busy")
        return

    async with _tick_lock:
        worker = get_build_worker()
        processed = 0
        try:
            while await worker.run_once() is not None:
                processed += 1
        except Exception as e:
            logger.bind(error=str(e), processed=processed).error("scheduled_build_worker_failed")
            raise  # Re-raise so APScheduler records the failure

        if processed:
            logger.bind(processed=processed).info("scheduled_build_worker_completed")


async def retention_job() -> None:
    """Purge finished build jobs and prune artifacts past retention."""
    from appforge.dependencies import get_build_worker

    logger.info("scheduled_retention_started")
    try:
        stats = await get_build_worker().run_retention()
        logger.bind(**stats).info("scheduled_retention_completed")
    except Exception as e:
        logger.bind(error=str(e)).error("scheduled_retention_failed")
        raise


async def start_scheduler() -> AsyncScheduler | None:
    """Initialize and start the scheduler."""
    global scheduler

    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("scheduler_disabled_by_config")
        return None

    config = get_config()

    # Build jobs live in the database, so schedules need no persistence
    scheduler = AsyncScheduler(data_store=MemoryDataStore())

    # Start the scheduler first (required before calling other methods in APScheduler 4.x)
    await scheduler.__aenter__()

    job_ids = ["build_worker"]
    await scheduler.add_schedule(
        build_worker_job,
        IntervalTrigger(seconds=settings.worker_poll_seconds),
        id="build_worker",
        conflict_policy=ConflictPolicy.replace,
    )

    if config.retention.enabled:
        await scheduler.add_schedule(
            retention_job,
            IntervalTrigger(hours=config.retention.interval_hours),
            id="retention",
            conflict_policy=ConflictPolicy.replace,
        )
        job_ids.append("retention")

    # Start the scheduler's background worker to actually process jobs
    await scheduler.start_in_background()

    logger.bind(jobs=job_ids).info("scheduler_started")
    return scheduler


async def stop_scheduler() -> None:
    """Gracefully stop the scheduler."""
    global scheduler
    if scheduler:
        await scheduler.__aexit__(None, None, None)
        logger.info("scheduler_stopped")
        scheduler = None


async def get_job_schedules() -> list[dict[str, Any]]:
    """Get all registered job schedules."""
    if not scheduler:
        return []

    schedules = await scheduler.get_schedules()
    return [
        {
            "id": s.id,
            "task_id": s.task_id,
            "trigger": str(s.trigger),
            "next_fire_time": s.next_fire_time.isoformat() if s.next_fire_time else None,
            "last_fire_time": s.last_fire_time.isoformat() if s.last_fire_time else None,
        }
        for s in schedules
    ]
