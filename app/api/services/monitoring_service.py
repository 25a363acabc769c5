"""Monitoring and observability service for sync runs."""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models.sync import SyncRun, SyncState

logger = logging.getLogger(__name__)

# Configuration for alert thresholds
ALERT_THRESHOLDS = {
    "stale_sync_hours": 48,  # Warn if no run completed in this window
    "failure_rate_threshold": 0.3,  # Warn if > 30% of recent runs failed
    "zero_records_threshold": 3,  # Warn after 3 consecutive zero-record runs
    "recent_window": 10,
}


class MonitoringService:
    """Service for sync run history and health."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    # ==========================================================================
    # Run history
    # ==========================================================================

    def get_recent_runs(
        self,
        limit: int = 50,
        status: str | None = None,
        sync_type: str | None = None,
        include_running: bool = True,
    ) -> list[SyncRun]:
        """Get recent sync runs, newest first.

        Args:
            limit: Maximum number of runs to return
            status: Optional status filter (running, completed, failed)
            sync_type: Optional sync type filter (full, incremental)
            include_running: Whether to include the currently running run
        """
        query = self.db.query(SyncRun).filter(SyncRun.stream == self.settings.sync_stream)
        if status:
            query = query.filter(SyncRun.status == status)
        if sync_type:
            query = query.filter(SyncRun.sync_type == sync_type)
        if not include_running:
            query = query.filter(SyncRun.status != SyncState.RUNNING.value)
        return query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()

    def get_run(self, run_id: int) -> SyncRun | None:
        return self.db.get(SyncRun, run_id)

    # ==========================================================================
    # Metrics
    # ==========================================================================

    def get_metrics(self, sync_type: str | None = None) -> dict[str, Any]:
        """Aggregate statistics over all finished runs."""
        query = self.db.query(SyncRun).filter(
            SyncRun.stream == self.settings.sync_stream,
            SyncRun.status != SyncState.RUNNING.value,
        )
        if sync_type:
            query = query.filter(SyncRun.sync_type == sync_type)
        runs = query.order_by(SyncRun.started_at.desc()).all()

        total_runs = len(runs)
        successful = [r for r in runs if r.status == SyncState.COMPLETED.value]
        failed = [r for r in runs if r.status == SyncState.FAILED.value]
        durations = [r.duration_ms for r in runs if r.duration_ms]

        last_success = successful[0] if successful else None
        last_failure = failed[0] if failed else None

        return {
            "sync_type": sync_type,
            "total_runs": total_runs,
            "successful_runs": len(successful),
            "failed_runs": len(failed),
            "success_rate": len(successful) / total_runs if total_runs else None,
            "avg_duration_ms": sum(durations) / len(durations) if durations else None,
            "min_duration_ms": min(durations) if durations else None,
            "max_duration_ms": max(durations) if durations else None,
            "total_records_processed": sum(r.records_processed or 0 for r in runs),
            "total_records_created": sum(r.records_created or 0 for r in runs),
            "total_records_archived": sum(r.records_archived or 0 for r in runs),
            "last_run_at": runs[0].started_at if runs else None,
            "last_success_at": last_success.ended_at if last_success else None,
            "last_failure_at": last_failure.ended_at if last_failure else None,
            "last_error_message": last_failure.error_message if last_failure else None,
        }

    # ==========================================================================
    # Health checks
    # ==========================================================================

    def check_alerts(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Derive warnings from run history (stale sync, failures, zero records)."""
        now = now or datetime.utcnow()
        alerts: list[dict[str, Any]] = []
        recent = self.get_recent_runs(
            limit=ALERT_THRESHOLDS["recent_window"], include_running=False
        )

        last_completed = next(
            (r for r in recent if r.status == SyncState.COMPLETED.value), None
        )
        stale_after = timedelta(hours=ALERT_THRESHOLDS["stale_sync_hours"])
        if last_completed is None:
            alerts.append({
                "alert_type": "stale_sync",
                "severity": "warning",
                "message": "No sync run has completed yet",
            })
        elif last_completed.ended_at and now - last_completed.ended_at > stale_after:
            hours = (now - last_completed.ended_at).total_seconds() / 3600
            alerts.append({
                "alert_type": "stale_sync",
                "severity": "warning",
                "message": f"Last completed sync was {hours:.0f}h ago",
            })

        if recent:
            failures = sum(1 for r in recent if r.status == SyncState.FAILED.value)
            failure_rate = failures / len(recent)
            if failure_rate > ALERT_THRESHOLDS["failure_rate_threshold"]:
                alerts.append({
                    "alert_type": "high_failure_rate",
                    "severity": "error",
                    "message": f"{failures} of the last {len(recent)} runs failed",
                })

        zero_streak = 0
        for run in recent:
            if run.status != SyncState.COMPLETED.value or (run.records_processed or 0) > 0:
                break
            zero_streak += 1
        if zero_streak >= ALERT_THRESHOLDS["zero_records_threshold"]:
            alerts.append({
                "alert_type": "no_records",
                "severity": "warning",
                "message": f"Last {zero_streak} runs processed zero records - check API credentials",
            })

        for alert in alerts:
            logger.warning(f"Sync alert [{alert['alert_type']}]: {alert['message']}")
        return alerts
