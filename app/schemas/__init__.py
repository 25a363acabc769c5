"""Pydantic schemas for API request/response validation."""

from app.schemas.car import (
    CarDetail,
    CarOut,
    CarPageResponse,
    NumericRange,
    RangesResponse,
)
from app.schemas.sync import (
    MergeResponse,
    SyncHistoryResponse,
    SyncRunOut,
    SyncStartRequest,
    SyncStartResponse,
    SyncStatusResponse,
)

__all__ = [
    # Car
    "CarOut",
    "CarDetail",
    "CarPageResponse",
    "NumericRange",
    "RangesResponse",
    # Sync
    "SyncStartRequest",
    "SyncStartResponse",
    "SyncStatusResponse",
    "SyncRunOut",
    "SyncHistoryResponse",
    "MergeResponse",
]
