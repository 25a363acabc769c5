"""Database models module."""

from app.models.car import VISIBLE_STATUSES, Car, CarStaging, SaleStatus
from app.models.sync import ErrorCategory, SyncRun, SyncState, SyncStatus, SyncType

__all__ = [
    "Car",
    "CarStaging",
    "SaleStatus",
    "VISIBLE_STATUSES",
    "SyncStatus",
    "SyncRun",
    "SyncState",
    "SyncType",
    "ErrorCategory",
]
