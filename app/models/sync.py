"""Sync status and run history models."""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SyncState(str, PyEnum):
    """Sync stream states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, PyEnum):
    """Full runs archive listings that were not seen; incremental runs never do."""

    FULL = "full"
    INCREMENTAL = "incremental"


class ErrorCategory(str, PyEnum):
    """Error taxonomy shared by the fetcher, orchestrator, watchdog and read API."""

    TRANSIENT = "transient"  # timeout, 5xx, 429: retried
    FATAL = "fatal"  # auth or configuration: aborts the run
    PARTIAL = "partial"  # a page failed after retries: run continues
    STALLED = "stalled"  # flagged by the watchdog
    CURSOR = "cursor"  # malformed or mismatched pagination cursor
    CANCELLED = "cancelled"  # operator reset


class SyncStatus(Base):
    """Current state of one sync stream (one row per stream, e.g. "main")."""

    __tablename__ = "sync_status"

    stream: Mapped[str] = mapped_column(String(50), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncState.IDLE.value
    )
    run_id: Mapped[int | None] = mapped_column(Integer)
    sync_type: Mapped[str | None] = mapped_column(String(20))
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime)
    current_page: Mapped[int] = mapped_column(Integer, default=0)
    start_page: Mapped[int] = mapped_column(Integer, default=1)
    total_pages: Mapped[int | None] = mapped_column(Integer)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    total_records: Mapped[int | None] = mapped_column(Integer)
    is_estimate: Mapped[bool] = mapped_column(Boolean, default=True)
    pages_completed: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_empty_pages: Mapped[int] = mapped_column(Integer, default=0)
    failed_pages: Mapped[int] = mapped_column(Integer, default=0)
    error_category: Mapped[str | None] = mapped_column(String(20))
    error_message: Mapped[str | None] = mapped_column(Text)
    completion_flagged: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<SyncStatus {self.stream}: {self.status}>"

    @property
    def is_running(self) -> bool:
        return self.status == SyncState.RUNNING.value


class SyncRun(Base):
    """History entry for each sync run; its id tags staging rows."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream: Mapped[str] = mapped_column(String(50), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncState.RUNNING.value
    )
    start_page: Mapped[int] = mapped_column(Integer, default=1)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    pages_fetched: Mapped[int] = mapped_column(Integer, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_archived: Mapped[int] = mapped_column(Integer, default=0)
    failed_pages: Mapped[int] = mapped_column(Integer, default=0)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime)
    error_category: Mapped[str | None] = mapped_column(String(20))
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_sync_runs_stream_started", "stream", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.sync_type}: {self.status}>"

    @property
    def duration_seconds(self) -> float | None:
        """Calculate run duration in seconds."""
        if self.duration_ms:
            return self.duration_ms / 1000.0
        if self.ended_at and self.started_at:
            return (self.ended_at - self.started_at).total_seconds()
        return None
