"""Stuck-run detection.

A running run is considered stuck when any of these hold:

- no activity for ``activity_timeout``
- running for longer than ``max_run_duration``
- low progress: below ``low_progress_ratio`` of the total after
  ``min_runtime``, with no activity for ``short_stall_window``

Stuck runs are failed with ``ErrorCategory.STALLED`` through the status
store's compare-and-set, so a run that finishes at the same moment wins.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from app.core.config import get_settings
from app.core.sync.status import SyncStatusStore
from app.models.sync import ErrorCategory, SyncState

logger = logging.getLogger(__name__)


@dataclass
class StuckPolicy:
    """Thresholds for stuck detection."""

    activity_timeout: timedelta = timedelta(minutes=10)
    max_run_duration: timedelta = timedelta(hours=2)
    low_progress_ratio: float = 0.05
    min_runtime: timedelta = timedelta(minutes=10)
    short_stall_window: timedelta = timedelta(minutes=3)

    @classmethod
    def from_settings(cls) -> "StuckPolicy":
        settings = get_settings()
        return cls(
            activity_timeout=timedelta(minutes=settings.watchdog_activity_timeout_minutes),
            max_run_duration=timedelta(minutes=settings.watchdog_max_run_duration_minutes),
            low_progress_ratio=settings.watchdog_low_progress_ratio,
            min_runtime=timedelta(minutes=settings.watchdog_min_runtime_minutes),
            short_stall_window=timedelta(minutes=settings.watchdog_short_stall_minutes),
        )


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60


def detect_stuck(
    status: dict[str, Any], policy: StuckPolicy, now: datetime | None = None
) -> str | None:
    """Return a diagnostic message if the status snapshot describes a stuck run."""
    if status.get("status") != SyncState.RUNNING.value:
        return None

    now = now or datetime.utcnow()
    started_at = status.get("started_at")
    last_activity = status.get("last_activity_at") or started_at
    if last_activity is None:
        return None

    idle_for = now - last_activity
    if idle_for > policy.activity_timeout:
        return (
            f"No activity for {_minutes(idle_for):.1f} min "
            f"(limit {_minutes(policy.activity_timeout):.0f} min) at page {status.get('current_page')}"
        )

    if started_at is None:
        return None
    running_for = now - started_at
    if running_for > policy.max_run_duration:
        return (
            f"Run exceeded max duration: {_minutes(running_for):.1f} min "
            f"(limit {_minutes(policy.max_run_duration):.0f} min)"
        )

    total = status.get("total_records") or 0
    processed = status.get("records_processed") or 0
    if total > 0:
        ratio = processed / total
        if (
            ratio < policy.low_progress_ratio
            and running_for > policy.min_runtime
            and idle_for > policy.short_stall_window
        ):
            return (
                f"Low progress: {processed}/{total} records ({ratio:.1%}) after "
                f"{_minutes(running_for):.1f} min, idle {_minutes(idle_for):.1f} min"
            )

    return None


def check_and_fail_stuck(
    store: SyncStatusStore,
    policy: StuckPolicy | None = None,
    now: datetime | None = None,
) -> dict[str, Any] | None:
    """Fail the stream's run if it is stuck.

    Returns:
        Dict describing the failed run, or None when nothing was stuck
    """
    policy = policy or StuckPolicy.from_settings()
    status = store.get_status(now)
    reason = detect_stuck(status, policy, now)
    if reason is None:
        return None

    run_id = status["run_id"]
    logger.warning(f"Watchdog: run {run_id} on stream '{store.stream}' is stuck: {reason}")
    if not store.fail(run_id, ErrorCategory.STALLED, reason):
        logger.info(f"Watchdog: run {run_id} already left the running state")
        return None

    return {
        "run_id": run_id,
        "reason": reason,
        "current_page": status["current_page"],
        "sync_type": status["sync_type"],
    }
