"""Tests for sync control API endpoints."""

from unittest.mock import AsyncMock, patch

from app.core.sync.staging import StagingWriter
from app.core.sync.status import SyncAlreadyRunningError, SyncStatusStore
from app.models.car import Car
from app.models.sync import SyncRun


def _staged_run(db_session, status="completed", sync_type="full"):
    from app.core.sync.mapper import map_record

    run = SyncRun(stream="main", sync_type=sync_type, status=status)
    db_session.add(run)
    db_session.flush()
    rows = [
        map_record({"id": n, "make": "Mazda", "model": "3", "price": 9000 + n}, "auctionsapi")
        for n in range(3)
    ]
    StagingWriter(db_session).upsert(run.id, rows)
    db_session.commit()
    return run.id


class TestSyncStartAPI:
    """Test suite for POST /sync/start."""

    def test_start_default_full(self, client):
        """Test an empty body starts a full run from page 1."""
        started = {"run_id": 7, "sync_type": "full", "from_page": 1}
        with patch(
            "app.api.routes.sync.trigger_manual_sync", new=AsyncMock(return_value=started)
        ) as trigger:
            response = client.post("/sync/start")

        assert response.status_code == 202
        assert response.json() == {"status": "started", **started}
        trigger.assert_awaited_once()
        assert trigger.await_args.kwargs["from_page"] == 1

    def test_start_resume_from_page(self, client):
        """Test fromPage and type are passed through."""
        started = {"run_id": 8, "sync_type": "incremental", "from_page": 120}
        with patch(
            "app.api.routes.sync.trigger_manual_sync", new=AsyncMock(return_value=started)
        ) as trigger:
            response = client.post("/sync/start", json={"type": "incremental", "fromPage": 120})

        assert response.status_code == 202
        assert trigger.await_args.args[0].value == "incremental"
        assert trigger.await_args.kwargs["from_page"] == 120

    def test_start_conflict(self, client):
        """Test a second start while running returns 409."""
        with patch(
            "app.api.routes.sync.trigger_manual_sync",
            new=AsyncMock(side_effect=SyncAlreadyRunningError("main", 3)),
        ):
            response = client.post("/sync/start")

        assert response.status_code == 409
        assert "already running" in response.json()["detail"]

    def test_start_invalid_body(self, client):
        """Test invalid sync types and pages are rejected."""
        assert client.post("/sync/start", json={"type": "weekly"}).status_code == 422
        assert client.post("/sync/start", json={"fromPage": 0}).status_code == 422


class TestSyncStatusAPI:
    """Test suite for status, reset, history and jobs."""

    def test_status_idle(self, client):
        """Test the status of a fresh stream."""
        response = client.get("/sync/status")
        assert response.status_code == 200
        data = response.json()
        assert data["stream"] == "main"
        assert data["status"] == "idle"

    def test_status_running(self, client):
        """Test progress fields of a running stream."""
        store = SyncStatusStore()
        run_id = store.start_run("full", estimated_total=100)
        store.record_page(run_id, 1, 25, consecutive_empty=0)

        data = client.get("/sync/status").json()

        assert data["status"] == "running"
        assert data["run_id"] == run_id
        assert data["records_processed"] == 25
        assert data["progress_percent"] == 25.0
        assert data["eta_seconds"] is not None

    def test_reset(self, client):
        """Test reset force-fails a running run with a visible reason."""
        store = SyncStatusStore()
        run_id = store.start_run("full")
        store.record_page(run_id, 1, 25, consecutive_empty=0)

        response = client.post("/sync/reset")

        assert response.status_code == 200
        data = response.json()
        assert data["previous_status"] == "running"
        assert data["status"] == "failed"
        assert data["run_id"] == run_id
        assert data["task_cancelled"] is False

        status = client.get("/sync/status").json()
        assert status["status"] == "failed"
        assert status["error_category"] == "cancelled"
        assert status["error_message"] == "Reset by operator"
        assert status["current_page"] == 1

    def test_reset_finished_stream_goes_idle(self, client):
        """Test reset of a failed stream clears the error and returns it to idle."""
        store = SyncStatusStore()
        run_id = store.start_run("full")
        store.fail(run_id, "stalled", "No activity")

        data = client.post("/sync/reset").json()

        assert data["previous_status"] == "failed"
        assert data["status"] == "idle"
        status = store.get_status()
        assert status["status"] == "idle"
        assert status["error_category"] is None

    def test_history(self, client):
        """Test history lists runs with metrics and alerts."""
        store = SyncStatusStore()
        first = store.start_run("full")
        store.complete(first)
        second = store.start_run("incremental")

        data = client.get("/sync/history").json()
        assert [run["id"] for run in data["runs"]] == [second, first]
        assert data["metrics"]["total_runs"] == 1
        assert isinstance(data["alerts"], list)

        filtered = client.get("/sync/history", params={"status": "completed"}).json()
        assert [run["id"] for run in filtered["runs"]] == [first]

    def test_jobs_without_scheduler(self, client):
        """Test jobs endpoint responds when the scheduler is not started."""
        with patch("app.api.routes.sync.get_scheduler", return_value=None):
            data = client.get("/sync/jobs").json()
        assert data == {"status": "scheduler_not_initialized", "jobs": []}


class TestMergeAPI:
    """Test suite for POST /sync/merge/{run_id}."""

    def test_merge_run(self, client, db_session):
        """Test a manual merge promotes staging rows and clears them."""
        run_id = _staged_run(db_session, status="failed")

        response = client.post(f"/sync/merge/{run_id}")

        assert response.status_code == 200
        assert response.json()["created"] == 3
        assert db_session.query(Car).count() == 3
        assert StagingWriter(db_session).count(run_id) == 0

    def test_merge_archive_requires_completed_full_run(self, client, db_session):
        """Test archiving is refused for failed runs."""
        run_id = _staged_run(db_session, status="failed")
        response = client.post(f"/sync/merge/{run_id}", params={"archive": True})
        assert response.status_code == 400

    def test_merge_archive_completed_full_run(self, client, db_session, car_factory):
        """Test archiving during a manual merge of a completed full run."""
        car_factory(external_id="old-listing")
        run_id = _staged_run(db_session, status="completed")

        response = client.post(f"/sync/merge/{run_id}", params={"archive": True})

        assert response.status_code == 200
        assert response.json()["archived"] == 1

    def test_merge_unknown_run(self, client):
        """Test merging a missing run returns 404."""
        assert client.post("/sync/merge/999").status_code == 404
