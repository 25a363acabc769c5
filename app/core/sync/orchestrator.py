"""Sync orchestrator: pulls the remote catalog into staging, then merges.

Page mode runs a bounded pool of workers that share one page dispenser. The
first page is fetched alone so its metadata (``total``/``last_page``) can
replace the configured estimate before the pool starts. Scroll mode follows
the remote ``scroll_id`` continuation sequentially.

A run stops when any of these hold:

- an empty page arrives and the remote API gave no pagination metadata
- ``has_more`` is false on a page
- ``sync_empty_page_threshold`` consecutive pages were empty or failed
- the dispenser passed ``last_page + sync_page_buffer`` (metadata known)
- ``sync_max_pages`` pages were dispensed

The first four, and an exhausted scroll session, end a full pass. A run cut
short by ``sync_max_pages`` is not a full pass and never archives unseen
listings. A page whose records cannot be staged counts as a failed page.

Progress is written to the status store after every page, on the event
loop between awaits, so there is a single writer per run.
"""

import asyncio
import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.sync.fetcher import FetchError, FetchResult, PageFetcher
from app.core.sync.mapper import map_records
from app.core.sync.merge import MergeResult, MergeService
from app.core.sync.staging import StagingWriter
from app.core.sync.status import SyncStatusStore
from app.models.sync import ErrorCategory, SyncType

logger = logging.getLogger(__name__)


@dataclass
class RunProgress:
    """In-memory state of one run, owned by the orchestrator."""

    run_id: int
    sync_type: str
    start_page: int
    next_page: int = 0
    last_page: int | None = None
    total_records: int | None = None
    has_metadata: bool = False
    pages_done: int = 0
    records: int = 0
    skipped_records: int = 0
    failed_pages: int = 0
    consecutive_empty: int = 0
    pages_since_merge: int = 0
    stop_reason: str | None = None
    # True once the remote catalog was walked to its end
    exhausted: bool = False
    fatal: FetchError | None = None
    abandoned: bool = False
    merges: list[dict] = field(default_factory=list)

    @property
    def stopped(self) -> bool:
        return self.stop_reason is not None


class SyncOrchestrator:
    """Runs a full or incremental sync of one stream."""

    def __init__(
        self,
        store: SyncStatusStore | None = None,
        fetcher: PageFetcher | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        concurrency: int | None = None,
        empty_page_threshold: int | None = None,
        page_buffer: int | None = None,
        max_pages: int | None = None,
        merge_every_pages: int | None = None,
        pagination_mode: str | None = None,
        source_site: str | None = None,
    ):
        settings = get_settings()
        self.settings = settings
        self.store = store or SyncStatusStore(session_factory=session_factory)
        self.fetcher = fetcher
        self._session_factory = session_factory
        self.concurrency = max(1, concurrency or settings.sync_concurrency)
        self.empty_page_threshold = max(
            1, empty_page_threshold or settings.sync_empty_page_threshold
        )
        self.page_buffer = page_buffer if page_buffer is not None else settings.sync_page_buffer
        self.max_pages = max_pages or settings.sync_max_pages
        self.merge_every_pages = (
            merge_every_pages if merge_every_pages is not None
            else settings.sync_merge_every_pages
        )
        self.pagination_mode = pagination_mode or settings.remote_api_pagination_mode
        self.source_site = source_site or settings.source_site
        self._tasks: list[asyncio.Task] = []

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ==========================================================================
    # Entry points
    # ==========================================================================

    async def run(
        self, sync_type: SyncType | str = SyncType.FULL, from_page: int = 1
    ) -> dict[str, Any]:
        """Claim the stream and run a sync to the end.

        Raises:
            SyncAlreadyRunningError: If the stream is already running
        """
        run_id = self.store.start_run(sync_type, start_page=from_page)
        return await self.execute(run_id, sync_type, from_page)

    async def execute(
        self, run_id: int, sync_type: SyncType | str = SyncType.FULL, start_page: int = 1
    ) -> dict[str, Any]:
        """Drive an already claimed run to a terminal state."""
        sync_type = SyncType(sync_type).value
        progress = RunProgress(
            run_id=run_id,
            sync_type=sync_type,
            start_page=max(1, start_page),
            next_page=max(1, start_page),
        )
        fetcher = self.fetcher or PageFetcher.from_settings()

        try:
            async with fetcher:
                if self.pagination_mode == "scroll":
                    await self._run_scroll(fetcher, progress)
                else:
                    await self._run_pages(fetcher, progress)
        except asyncio.CancelledError:
            self.store.fail(run_id, ErrorCategory.CANCELLED, "Sync task was cancelled")
            raise
        except Exception as e:
            logger.exception(f"Sync run {run_id} crashed: {e}")
            self.store.fail(run_id, ErrorCategory.FATAL, f"Unexpected error: {e}")
            raise

        return self._finish(progress)

    # ==========================================================================
    # Page mode
    # ==========================================================================

    async def _run_pages(self, fetcher: PageFetcher, progress: RunProgress) -> None:
        first_page = self._dispense(progress)
        first = await fetcher.fetch_page(first_page)
        self._handle_result(progress, first)
        if progress.stopped:
            return

        workers = [
            asyncio.create_task(self._page_worker(fetcher, progress), name=f"sync-worker-{i}")
            for i in range(self.concurrency)
        ]
        self._tasks = workers
        try:
            results = await asyncio.gather(*workers, return_exceptions=True)
        finally:
            self._tasks = []

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                raise result

    async def _page_worker(self, fetcher: PageFetcher, progress: RunProgress) -> None:
        try:
            while not progress.stopped:
                page = self._dispense(progress)
                if page is None:
                    return
                result = await fetcher.fetch_page(page)
                self._handle_result(progress, result)
        except Exception:
            progress.stop_reason = progress.stop_reason or "Worker crashed"
            raise

    def _dispense(self, progress: RunProgress) -> int | None:
        """Hand out the next page number, or None once the run should end."""
        if progress.stopped:
            return None
        page = progress.next_page
        if page - progress.start_page >= self.max_pages:
            progress.stop_reason = f"Reached max pages ({self.max_pages})"
            return None
        if progress.has_metadata and progress.last_page is not None:
            if page > progress.last_page + self.page_buffer:
                progress.stop_reason = (
                    f"Passed last page {progress.last_page} + buffer {self.page_buffer}"
                )
                progress.exhausted = True
                return None
        progress.next_page += 1
        return page

    # ==========================================================================
    # Scroll mode
    # ==========================================================================

    async def _run_scroll(self, fetcher: PageFetcher, progress: RunProgress) -> None:
        scroll_id: str | None = None
        sequence = progress.start_page
        while not progress.stopped:
            if sequence - progress.start_page >= self.max_pages:
                progress.stop_reason = f"Reached max pages ({self.max_pages})"
                break
            result = await fetcher.fetch_scroll(scroll_id, sequence)
            self._handle_result(progress, result)
            if result.ok:
                scroll_id = result.page.scroll_id
                if not scroll_id and not progress.stopped:
                    progress.stop_reason = "Scroll session exhausted"
                    progress.exhausted = True
            sequence += 1

    # ==========================================================================
    # Shared page handling
    # ==========================================================================

    def _handle_result(self, progress: RunProgress, result: FetchResult) -> None:
        if progress.abandoned or progress.fatal is not None:
            return

        if result.is_fatal:
            progress.fatal = result.error
            progress.stop_reason = f"Fatal error on page {result.page_number}"
            self._cancel_workers()
            return

        records = 0
        failed = not result.ok
        if failed:
            progress.failed_pages += 1
            progress.consecutive_empty += 1
            logger.warning(f"Run {progress.run_id}: page {result.page_number} skipped: {result.error.message}")
        else:
            page = result.page
            if page.has_metadata and not progress.has_metadata:
                self._discover(progress, page.total, page.last_page)

            if page.is_empty:
                progress.consecutive_empty += 1
                if not progress.has_metadata and not progress.stopped:
                    progress.stop_reason = f"Empty page {result.page_number}"
                    progress.exhausted = True
            else:
                staged = self._stage(progress, page.records, result.page_number)
                if staged is None:
                    failed = True
                    progress.failed_pages += 1
                    progress.consecutive_empty += 1
                else:
                    progress.consecutive_empty = 0
                    records = staged

            if page.has_more is False and not progress.stopped:
                progress.stop_reason = f"Remote reported no more pages after page {result.page_number}"
                progress.exhausted = True

        progress.pages_done += 1
        progress.records += records

        if not self.store.record_page(
            progress.run_id,
            result.page_number,
            records,
            consecutive_empty=progress.consecutive_empty,
            failed=failed,
        ):
            logger.warning(f"Run {progress.run_id} is no longer running, stopping workers")
            progress.abandoned = True
            progress.stop_reason = progress.stop_reason or "Run left the running state"
            self._cancel_workers()
            return

        if progress.consecutive_empty >= self.empty_page_threshold and not progress.stopped:
            progress.stop_reason = f"{progress.consecutive_empty} consecutive empty pages"
            progress.exhausted = True

        if self.merge_every_pages > 0 and not progress.stopped:
            progress.pages_since_merge += 1
            if progress.pages_since_merge >= self.merge_every_pages:
                progress.pages_since_merge = 0
                merge = self._merge(progress.run_id, archive_unseen=False)
                progress.merges.append(merge.to_dict())
                self.store.touch(progress.run_id)

    def _discover(self, progress: RunProgress, total: int | None, last_page: int | None) -> None:
        progress.has_metadata = True
        progress.total_records = total
        progress.last_page = last_page
        self.store.record_discovery(progress.run_id, total, last_page)

    def _stage(self, progress: RunProgress, records: list[dict], page: int) -> int | None:
        """Map and stage one page; None when the page could not be stored."""
        try:
            rows, skipped = map_records(records, self.source_site)
            progress.skipped_records += skipped
            if not rows:
                return 0
            with self._session() as db:
                return StagingWriter(db).upsert(progress.run_id, rows, page=page)
        except (SQLAlchemyError, ValueError, OverflowError) as e:
            logger.warning(
                f"Run {progress.run_id}: page {page} could not be staged ({ErrorCategory.PARTIAL.value}): {e}"
            )
            return None

    def _merge(self, run_id: int, archive_unseen: bool) -> MergeResult:
        with self._session() as db:
            return MergeService(db).merge_run(run_id, archive_unseen=archive_unseen)

    def _cancel_workers(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    # ==========================================================================
    # Finish
    # ==========================================================================

    def _finish(self, progress: RunProgress) -> dict[str, Any]:
        run_id = progress.run_id
        summary = {
            "run_id": run_id,
            "sync_type": progress.sync_type,
            "stop_reason": progress.stop_reason,
            "pages": progress.pages_done,
            "records": progress.records,
            "skipped_records": progress.skipped_records,
            "failed_pages": progress.failed_pages,
            "total_records": progress.total_records,
            "last_page": progress.last_page,
            "periodic_merges": progress.merges,
            "merge": None,
        }

        if progress.fatal is not None:
            self.store.fail(run_id, ErrorCategory.FATAL, progress.fatal.message)
            summary["status"] = "failed"
            summary["error"] = progress.fatal.message
            return summary

        if progress.abandoned:
            summary["status"] = "abandoned"
            return summary

        if progress.records == 0 and progress.failed_pages and progress.failed_pages == progress.pages_done:
            message = f"All {progress.failed_pages} fetched pages failed"
            self.store.fail(run_id, ErrorCategory.PARTIAL, message)
            summary["status"] = "failed"
            summary["error"] = message
            return summary

        if not self.store.complete(run_id):
            summary["status"] = "abandoned"
            return summary
        summary["status"] = "completed"

        status = self.store.get_status()
        archive_unseen = (
            progress.sync_type == SyncType.FULL.value
            and progress.start_page == 1
            and progress.exhausted
            and progress.failed_pages == 0
            and not status["completion_flagged"]
        )
        try:
            merge = self._merge(run_id, archive_unseen=archive_unseen)
            with self._session() as db:
                StagingWriter(db).clear_run(run_id)
        except Exception as e:
            logger.error(f"Merge of run {run_id} failed, staging rows kept: {e}")
            summary["merge_error"] = str(e)
        else:
            summary["merge"] = merge.to_dict()

        logger.info(
            f"Sync run {run_id} finished: {progress.records} records over "
            f"{progress.pages_done} pages ({progress.stop_reason})"
        )
        return summary

