"""Background jobs: sync runs, the stuck-run watchdog and periodic syncs."""

import asyncio
import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.core.sync.orchestrator import SyncOrchestrator
from app.core.sync.status import SyncAlreadyRunningError, SyncStatusStore
from app.core.sync.watchdog import check_and_fail_stuck
from app.models.sync import SyncType

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None

# The in-flight sync task of this process (one stream, one run at a time)
_active_task: asyncio.Task | None = None


async def _run_sync_task(run_id: int, sync_type: str, start_page: int) -> dict[str, Any] | None:
    """Execute a claimed run; failures are already recorded on the status row."""
    orchestrator = SyncOrchestrator()
    try:
        return await orchestrator.execute(run_id, sync_type, start_page)
    except asyncio.CancelledError:
        logger.warning(f"Sync run {run_id} task cancelled")
        raise
    except Exception as e:
        logger.error(f"Sync run {run_id} ended with an error: {e}", exc_info=True)
        return None


def _launch(run_id: int, sync_type: str, start_page: int) -> asyncio.Task:
    global _active_task
    _active_task = asyncio.create_task(
        _run_sync_task(run_id, sync_type, start_page), name=f"sync-run-{run_id}"
    )
    return _active_task


def get_active_task() -> asyncio.Task | None:
    if _active_task is not None and _active_task.done():
        return None
    return _active_task


def cancel_active_sync() -> bool:
    """Cancel the in-flight sync task, if any."""
    task = get_active_task()
    if task is None:
        return False
    task.cancel()
    logger.info(f"Cancelled sync task {task.get_name()}")
    return True


async def trigger_manual_sync(
    sync_type: SyncType | str = SyncType.FULL, from_page: int = 1
) -> dict[str, Any]:
    """Claim the stream and start a run in the background.

    Raises:
        SyncAlreadyRunningError: If the stream is already running
    """
    sync_type = SyncType(sync_type).value
    store = SyncStatusStore()
    run_id = store.start_run(sync_type, start_page=from_page)
    _launch(run_id, sync_type, from_page)
    return {"run_id": run_id, "sync_type": sync_type, "from_page": max(1, from_page)}


async def run_watchdog() -> dict[str, Any] | None:
    """Fail a stuck run and, when enabled, resume it from its current page."""
    store = SyncStatusStore()
    stuck = check_and_fail_stuck(store)
    if stuck is None:
        return None

    cancel_active_sync()

    if not settings.auto_resume_enabled:
        return stuck

    resume_page = max(1, stuck["current_page"] or 1)
    try:
        resumed = await trigger_manual_sync(stuck["sync_type"] or SyncType.FULL, from_page=resume_page)
    except SyncAlreadyRunningError as e:
        logger.info(f"Auto-resume skipped: {e}")
        return stuck

    logger.info(f"Auto-resumed stuck run {stuck['run_id']} as run {resumed['run_id']} from page {resume_page}")
    return {**stuck, "resumed_run_id": resumed["run_id"]}


async def run_incremental_sync() -> dict[str, Any] | None:
    """Periodic incremental run; skipped while another run is active."""
    try:
        return await trigger_manual_sync(SyncType.INCREMENTAL)
    except SyncAlreadyRunningError as e:
        logger.info(f"Scheduled incremental sync skipped: {e}")
        return None


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the background scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()

    # Stuck-run watchdog
    scheduler.add_job(
        run_watchdog,
        trigger=IntervalTrigger(seconds=settings.watchdog_interval_seconds),
        id="sync_watchdog",
        name="Sync Watchdog",
        replace_existing=True,
        max_instances=1,
    )

    # Periodic incremental sync (disabled when the interval is 0)
    if settings.incremental_sync_interval_hours > 0:
        scheduler.add_job(
            run_incremental_sync,
            trigger=IntervalTrigger(hours=settings.incremental_sync_interval_hours),
            id="sync_incremental",
            name="Incremental Car Sync",
            replace_existing=True,
            max_instances=1,
        )

    logger.info(f"Scheduler initialized with {len(scheduler.get_jobs())} jobs")
    return scheduler


def get_scheduler() -> AsyncIOScheduler | None:
    """Get the scheduler instance."""
    return scheduler
