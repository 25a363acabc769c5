"""Sync status store.

The ``sync_status`` row of a stream is only mutated through the transition
methods below. Terminal transitions (complete, fail) are compare-and-set
updates conditioned on ``status = 'running' AND run_id = ?`` so that a worker
finishing a run and the watchdog failing it can never both win.

State machine::

    idle/completed/failed --start_run--> running
    running --complete--> completed
    running --fail--> failed
    running --reset--> failed (cancelled)
    idle/completed/failed --reset--> idle
"""

import logging
import math
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.models.sync import ErrorCategory, SyncRun, SyncState, SyncStatus, SyncType

logger = logging.getLogger(__name__)


class SyncAlreadyRunningError(Exception):
    """Raised when a run is requested while the stream is already running."""

    def __init__(self, stream: str, run_id: int | None):
        self.stream = stream
        self.run_id = run_id
        super().__init__(f"Sync stream '{stream}' is already running (run {run_id})")


def compute_progress(row: SyncStatus, now: datetime | None = None) -> dict[str, Any]:
    """Progress percentage and ETA for a status row.

    The ETA comes from measured throughput (records per elapsed second of
    this run). Progress is clamped to [0, 100] and the ETA is never negative;
    both are ``None`` when there is nothing to measure yet.
    """
    now = now or datetime.utcnow()
    total = row.total_records or 0
    processed = row.records_processed or 0

    if total > 0:
        progress = max(0.0, min(100.0, processed / total * 100))
    elif row.total_pages:
        done = max(0, (row.current_page or 0) - (row.start_page or 1) + 1)
        progress = max(0.0, min(100.0, done / row.total_pages * 100))
    else:
        progress = None

    if row.status == SyncState.COMPLETED.value:
        return {"progress_percent": 100.0, "eta_seconds": 0}

    eta_seconds = None
    if row.status == SyncState.RUNNING.value and row.started_at and total > 0:
        elapsed = (now - row.started_at).total_seconds()
        if elapsed > 0 and processed > 0:
            throughput = processed / elapsed
            remaining = max(0, total - processed)
            eta_seconds = max(0, int(math.ceil(remaining / throughput)))

    return {
        "progress_percent": round(progress, 2) if progress is not None else None,
        "eta_seconds": eta_seconds,
    }


class SyncStatusStore:
    """Owns the ``sync_status`` row (and run history) of one stream."""

    def __init__(
        self,
        stream: str | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.settings = get_settings()
        self.stream = stream or self.settings.sync_stream
        self._session_factory = session_factory

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _get_or_create(self, db: Session) -> SyncStatus:
        row = db.get(SyncStatus, self.stream)
        if row is None:
            row = SyncStatus(stream=self.stream, status=SyncState.IDLE.value)
            db.add(row)
            db.flush()
        return row

    def _running(self, db: Session, run_id: int):
        return db.query(SyncStatus).filter(
            SyncStatus.stream == self.stream,
            SyncStatus.status == SyncState.RUNNING.value,
            SyncStatus.run_id == run_id,
        )

    # ==========================================================================
    # Transitions
    # ==========================================================================

    def start_run(
        self,
        sync_type: SyncType | str = SyncType.FULL,
        start_page: int = 1,
        estimated_total: int | None = None,
    ) -> int:
        """Move the stream to ``running`` and open a run history entry.

        Returns:
            The new run id

        Raises:
            SyncAlreadyRunningError: If the stream is already running
        """
        sync_type = SyncType(sync_type).value
        start_page = max(1, start_page)
        estimated_total = (
            estimated_total if estimated_total is not None
            else self.settings.sync_estimated_total_records
        )
        per_page = max(1, self.settings.remote_api_per_page)
        now = datetime.utcnow()

        with self.session() as db:
            row = self._get_or_create(db)
            if row.status == SyncState.RUNNING.value:
                raise SyncAlreadyRunningError(self.stream, row.run_id)

            run = SyncRun(
                stream=self.stream,
                sync_type=sync_type,
                status=SyncState.RUNNING.value,
                start_page=start_page,
                started_at=now,
            )
            db.add(run)
            db.flush()

            claimed = (
                db.query(SyncStatus)
                .filter(
                    SyncStatus.stream == self.stream,
                    SyncStatus.status != SyncState.RUNNING.value,
                )
                .update(
                    {
                        SyncStatus.status: SyncState.RUNNING.value,
                        SyncStatus.run_id: run.id,
                        SyncStatus.sync_type: sync_type,
                        SyncStatus.started_at: now,
                        SyncStatus.completed_at: None,
                        SyncStatus.last_activity_at: now,
                        SyncStatus.current_page: start_page - 1,
                        SyncStatus.start_page: start_page,
                        SyncStatus.total_records: estimated_total or None,
                        SyncStatus.total_pages: (
                            math.ceil(estimated_total / per_page) if estimated_total else None
                        ),
                        SyncStatus.is_estimate: True,
                        SyncStatus.records_processed: 0,
                        SyncStatus.pages_completed: 0,
                        SyncStatus.consecutive_empty_pages: 0,
                        SyncStatus.failed_pages: 0,
                        SyncStatus.error_category: None,
                        SyncStatus.error_message: None,
                        SyncStatus.completion_flagged: False,
                    },
                    synchronize_session=False,
                )
            )
            if not claimed:
                raise SyncAlreadyRunningError(self.stream, row.run_id)
            run_id = run.id

        logger.info(f"Sync run {run_id} started ({sync_type}, stream={self.stream}, page={start_page})")
        return run_id

    def record_discovery(
        self, run_id: int, total_records: int | None, total_pages: int | None
    ) -> bool:
        """Replace the estimate with the remote API's real totals."""
        values: dict = {SyncStatus.is_estimate: False, SyncStatus.last_activity_at: datetime.utcnow()}
        if total_records is not None:
            values[SyncStatus.total_records] = total_records
        if total_pages is not None:
            values[SyncStatus.total_pages] = total_pages
        with self.session() as db:
            updated = self._running(db, run_id).update(values, synchronize_session=False)
        if updated:
            logger.info(f"Run {run_id} discovered {total_records} records / {total_pages} pages")
        return bool(updated)

    def record_page(
        self,
        run_id: int,
        page: int,
        records: int,
        consecutive_empty: int,
        failed: bool = False,
    ) -> bool:
        """Persist progress after a page completes.

        Returns:
            False if the run is no longer the stream's running run (reset or
            failed by the watchdog); callers should stop.
        """
        with self.session() as db:
            row = self._running(db, run_id).first()
            if row is None:
                return False
            now = datetime.utcnow()
            row.current_page = max(row.current_page or 0, page)
            row.records_processed = (row.records_processed or 0) + max(0, records)
            row.pages_completed = (row.pages_completed or 0) + 1
            row.consecutive_empty_pages = consecutive_empty
            if failed:
                row.failed_pages = (row.failed_pages or 0) + 1
            if row.last_activity_at is None or now > row.last_activity_at:
                row.last_activity_at = now
        return True

    def touch(self, run_id: int) -> bool:
        """Record activity without progress (e.g. a merge checkpoint)."""
        with self.session() as db:
            updated = self._running(db, run_id).update(
                {SyncStatus.last_activity_at: datetime.utcnow()},
                synchronize_session=False,
            )
        return bool(updated)

    def complete(self, run_id: int) -> bool:
        """running -> completed.

        Flags the run when real totals were discovered and fewer than
        ``sync_completion_ratio`` of them were processed.

        Returns:
            True if this call performed the transition
        """
        now = datetime.utcnow()
        with self.session() as db:
            row = self._running(db, run_id).first()
            if row is None:
                return False

            flagged = False
            message = None
            total = row.total_records or 0
            processed = row.records_processed or 0
            if total and not row.is_estimate and processed < total * self.settings.sync_completion_ratio:
                flagged = True
                message = (
                    f"Completed with {processed} of {total} records "
                    f"({processed / total:.1%}); remote pagination may have ended early"
                )
                logger.warning(f"Run {run_id}: {message}")

            updated = self._running(db, run_id).update(
                {
                    SyncStatus.status: SyncState.COMPLETED.value,
                    SyncStatus.completed_at: now,
                    SyncStatus.last_activity_at: now,
                    SyncStatus.completion_flagged: flagged,
                    SyncStatus.error_category: None,
                    SyncStatus.error_message: message,
                },
                synchronize_session=False,
            )
            if updated:
                self._close_run(db, run_id, row, SyncState.COMPLETED, now, None, message)

        if updated:
            logger.info(f"Sync run {run_id} completed: {processed} records")
        return bool(updated)

    def fail(self, run_id: int, category: ErrorCategory, message: str) -> bool:
        """running -> failed. Returns True if this call performed the transition."""
        now = datetime.utcnow()
        with self.session() as db:
            row = self._running(db, run_id).first()
            if row is None:
                return False
            updated = self._running(db, run_id).update(
                {
                    SyncStatus.status: SyncState.FAILED.value,
                    SyncStatus.completed_at: now,
                    SyncStatus.error_category: ErrorCategory(category).value,
                    SyncStatus.error_message: message,
                },
                synchronize_session=False,
            )
            if updated:
                self._close_run(db, run_id, row, SyncState.FAILED, now, category, message)

        if updated:
            logger.error(f"Sync run {run_id} failed ({ErrorCategory(category).value}): {message}")
        return bool(updated)

    def reset(self) -> dict[str, Any]:
        """Force-fail a running run, or return a finished stream to ``idle``.

        A running run goes to ``failed`` with category ``cancelled`` through
        the same compare-and-set as :meth:`fail`, keeping ``current_page`` so a
        resume can continue from it. Any other state goes to ``idle``.
        """
        with self.session() as db:
            row = self._get_or_create(db)
            previous = row.status
            run_id = row.run_id

        if previous == SyncState.RUNNING.value and run_id is not None:
            if self.fail(run_id, ErrorCategory.CANCELLED, "Reset by operator"):
                logger.warning(f"Sync stream '{self.stream}' reset: run {run_id} failed by operator")
                return {
                    "stream": self.stream,
                    "previous_status": previous,
                    "status": SyncState.FAILED.value,
                    "run_id": run_id,
                }
            # The run finished on its own first: fall through to idle

        with self.session() as db:
            updated = (
                db.query(SyncStatus)
                .filter(
                    SyncStatus.stream == self.stream,
                    SyncStatus.status != SyncState.RUNNING.value,
                )
                .update(
                    {
                        SyncStatus.status: SyncState.IDLE.value,
                        SyncStatus.consecutive_empty_pages: 0,
                        SyncStatus.error_category: None,
                        SyncStatus.error_message: None,
                        SyncStatus.completion_flagged: False,
                    },
                    synchronize_session=False,
                )
            )
        if not updated:
            raise SyncAlreadyRunningError(self.stream, run_id)

        logger.warning(f"Sync stream '{self.stream}' reset to idle (was {previous}, run {run_id})")
        return {
            "stream": self.stream,
            "previous_status": previous,
            "status": SyncState.IDLE.value,
            "run_id": run_id,
        }

    def _close_run(
        self,
        db: Session,
        run_id: int,
        row: SyncStatus,
        state: SyncState,
        now: datetime,
        category: ErrorCategory | None,
        message: str | None,
    ) -> None:
        run = db.get(SyncRun, run_id)
        if run is None:
            return
        run.status = state.value
        run.ended_at = now
        if run.started_at:
            run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
        run.pages_fetched = row.pages_completed or 0
        run.records_processed = row.records_processed or 0
        run.failed_pages = row.failed_pages or 0
        run.error_category = ErrorCategory(category).value if category else None
        run.error_message = message

    # ==========================================================================
    # Reads
    # ==========================================================================

    def get_status(self, now: datetime | None = None) -> dict[str, Any]:
        """Snapshot of the stream's status with progress and ETA."""
        with self.session() as db:
            row = self._get_or_create(db)
            return self.to_dict(row, now)

    @staticmethod
    def to_dict(row: SyncStatus, now: datetime | None = None) -> dict[str, Any]:
        return {
            "stream": row.stream,
            "status": row.status,
            "run_id": row.run_id,
            "sync_type": row.sync_type,
            "started_at": row.started_at,
            "completed_at": row.completed_at,
            "last_activity_at": row.last_activity_at,
            "current_page": row.current_page or 0,
            "start_page": row.start_page or 1,
            "total_pages": row.total_pages,
            "records_processed": row.records_processed or 0,
            "total_records": row.total_records,
            "is_estimate": bool(row.is_estimate),
            "pages_completed": row.pages_completed or 0,
            "consecutive_empty_pages": row.consecutive_empty_pages or 0,
            "failed_pages": row.failed_pages or 0,
            "error_category": row.error_category,
            "error_message": row.error_message,
            "completion_flagged": bool(row.completion_flagged),
            **compute_progress(row, now),
        }
