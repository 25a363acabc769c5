"""Sync engine: pulls the remote listing catalog into the local cache."""

from app.core.sync.fetcher import FetchError, FetchResult, ListingPage, PageFetcher
from app.core.sync.merge import MergeResult, MergeService
from app.core.sync.orchestrator import SyncOrchestrator
from app.core.sync.staging import StagingWriter
from app.core.sync.status import SyncAlreadyRunningError, SyncStatusStore
from app.core.sync.watchdog import StuckPolicy, check_and_fail_stuck

__all__ = [
    "FetchError",
    "FetchResult",
    "ListingPage",
    "MergeResult",
    "MergeService",
    "PageFetcher",
    "StagingWriter",
    "StuckPolicy",
    "SyncAlreadyRunningError",
    "SyncOrchestrator",
    "SyncStatusStore",
    "check_and_fail_stuck",
]
