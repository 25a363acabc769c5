"""Sync control Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.sync import SyncType


class SyncStartRequest(BaseModel):
    """Body of ``POST /sync/start``."""

    model_config = ConfigDict(populate_by_name=True)

    type: SyncType = SyncType.FULL
    from_page: int = Field(1, ge=1, le=1_000_000, alias="fromPage")


class SyncStartResponse(BaseModel):
    status: str = "started"
    run_id: int
    sync_type: str
    from_page: int


class SyncStatusResponse(BaseModel):
    """Current state of the sync stream with progress and ETA."""

    stream: str
    status: str
    run_id: int | None = None
    sync_type: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_activity_at: datetime | None = None
    current_page: int = 0
    start_page: int = 1
    total_pages: int | None = None
    records_processed: int = 0
    total_records: int | None = None
    is_estimate: bool = True
    pages_completed: int = 0
    consecutive_empty_pages: int = 0
    failed_pages: int = 0
    error_category: str | None = None
    error_message: str | None = None
    completion_flagged: bool = False
    progress_percent: float | None = Field(None, ge=0, le=100)
    eta_seconds: int | None = Field(None, ge=0)


class SyncRunOut(BaseModel):
    """One entry of the run history."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    status: str
    start_page: int
    started_at: datetime
    ended_at: datetime | None = None
    duration_ms: int | None = None
    pages_fetched: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_archived: int = 0
    failed_pages: int = 0
    merged_at: datetime | None = None
    error_category: str | None = None
    error_message: str | None = None


class SyncHistoryResponse(BaseModel):
    runs: list[SyncRunOut]
    metrics: dict
    alerts: list[dict] = Field(default_factory=list)


class MergeResponse(BaseModel):
    run_id: int
    staged: int
    created: int
    updated: int
    unchanged: int
    archived: int
