"""Tests for run history, metrics and alerts."""

from datetime import datetime, timedelta

from app.api.services.monitoring_service import MonitoringService
from app.models.sync import SyncRun

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _run(db, status="completed", sync_type="full", hours_ago=1, records=100, duration_ms=60_000):
    run = SyncRun(
        stream="main",
        sync_type=sync_type,
        status=status,
        started_at=NOW - timedelta(hours=hours_ago),
        ended_at=NOW - timedelta(hours=hours_ago) + timedelta(milliseconds=duration_ms),
        duration_ms=duration_ms,
        records_processed=records,
        error_message="boom" if status == "failed" else None,
    )
    db.add(run)
    db.commit()
    return run


class TestMonitoringService:
    """Test suite for MonitoringService."""

    def test_recent_runs_filters(self, db_session):
        """Test history ordering and filters."""
        _run(db_session, hours_ago=3)
        _run(db_session, sync_type="incremental", hours_ago=2)
        _run(db_session, status="running", hours_ago=0)
        service = MonitoringService(db_session)

        assert len(service.get_recent_runs()) == 3
        assert len(service.get_recent_runs(include_running=False)) == 2
        assert [r.sync_type for r in service.get_recent_runs(sync_type="incremental")] == ["incremental"]
        assert service.get_recent_runs(limit=1)[0].status == "running"

    def test_metrics(self, db_session):
        """Test aggregate metrics over finished runs."""
        _run(db_session, hours_ago=3, duration_ms=10_000)
        _run(db_session, status="failed", hours_ago=2, duration_ms=30_000, records=0)
        metrics = MonitoringService(db_session).get_metrics()

        assert metrics["total_runs"] == 2
        assert metrics["success_rate"] == 0.5
        assert metrics["avg_duration_ms"] == 20_000
        assert metrics["last_error_message"] == "boom"

    def test_no_completed_run_alert(self, db_session):
        """Test a stream that never completed raises a stale alert."""
        alerts = MonitoringService(db_session).check_alerts(now=NOW)
        assert [a["alert_type"] for a in alerts] == ["stale_sync"]

    def test_healthy_history_no_alerts(self, db_session):
        """Test recent successful runs raise no alerts."""
        _run(db_session, hours_ago=5)
        _run(db_session, hours_ago=1)
        assert MonitoringService(db_session).check_alerts(now=NOW) == []

    def test_failure_and_zero_record_alerts(self, db_session):
        """Test failure rate and zero-record streaks are reported."""
        _run(db_session, hours_ago=100)
        for hours in (10, 9, 8):
            _run(db_session, status="failed", hours_ago=hours)
        for hours in (3, 2, 1):
            _run(db_session, hours_ago=hours, records=0)

        types = {a["alert_type"] for a in MonitoringService(db_session).check_alerts(now=NOW)}
        assert types == {"high_failure_rate", "no_records"}
