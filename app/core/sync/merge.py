"""Merge step: promote a run's staging rows into the main ``cars`` table.

Merging is idempotent: rows whose ``data_hash`` already matches are left
alone, and a second merge of the same run changes nothing. Concurrent merges
of the same run are serialised by a per-run lock.
"""

import logging
import threading
import weakref
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from app.core.sync.staging import STAGED_COLUMNS
from app.models.car import VISIBLE_STATUSES, Car, CarStaging, SaleStatus
from app.models.sync import SyncRun

logger = logging.getLogger(__name__)

MERGE_BATCH_SIZE = 500


class RunLock:
    """Mutex for one run's merges; weak-referenceable so the registry can drop it."""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self) -> "RunLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


_registry_lock = threading.Lock()
# Entries vanish once no merge of the run holds a reference
_run_locks: "weakref.WeakValueDictionary[int, RunLock]" = weakref.WeakValueDictionary()


def get_run_lock(run_id: int) -> RunLock:
    """Return the lock guarding merges of ``run_id``."""
    with _registry_lock:
        lock = _run_locks.get(run_id)
        if lock is None:
            lock = RunLock()
            _run_locks[run_id] = lock
        return lock


@dataclass
class MergeResult:
    """Counts from one merge pass."""

    run_id: int
    staged: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    archived: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class MergeService:
    """Upserts staging rows into ``cars`` and archives unseen listings."""

    def __init__(self, db: Session):
        self.db = db

    def merge_run(self, run_id: int, archive_unseen: bool = False) -> MergeResult:
        """Merge staging rows of ``run_id`` into the main table.

        Args:
            run_id: Sync run whose staging rows are merged
            archive_unseen: Archive active/pending rows of the same source that
                this run did not see. Only valid for a finished full pass.
        """
        with get_run_lock(run_id):
            result = MergeResult(run_id=run_id)
            now = datetime.utcnow()

            last_id = 0
            while True:
                batch = (
                    self.db.query(CarStaging)
                    .filter(CarStaging.run_id == run_id, CarStaging.id > last_id)
                    .order_by(CarStaging.id)
                    .limit(MERGE_BATCH_SIZE)
                    .all()
                )
                if not batch:
                    break
                last_id = batch[-1].id
                self._merge_batch(run_id, batch, now, result)
                self.db.flush()

            if archive_unseen:
                result.archived = self._archive_unseen(run_id, now)

            self._record_on_run(run_id, result, now)
            self.db.flush()

        logger.info(
            f"Merged run {run_id}: {result.created} created, {result.updated} updated, "
            f"{result.unchanged} unchanged, {result.archived} archived"
        )
        return result

    def _merge_batch(
        self,
        run_id: int,
        batch: list[CarStaging],
        now: datetime,
        result: MergeResult,
    ) -> None:
        # A listing is identified by its source and the id it has there
        existing = {
            (car.source_site, car.external_id): car
            for car in self.db.query(Car)
            .filter(
                Car.source_site.in_(sorted({staged.source_site for staged in batch})),
                Car.external_id.in_([staged.external_id for staged in batch]),
            )
            .all()
        }

        for staged in batch:
            result.staged += 1
            values = {
                column: getattr(staged, column)
                for column in STAGED_COLUMNS
                if column != "car_id"
            }
            key = (staged.source_site, staged.external_id)
            car = existing.get(key)

            if car is None:
                car = Car(
                    id=staged.car_id,
                    external_id=staged.external_id,
                    created_at=now,
                    updated_at=now,
                    **values,
                )
                self.db.add(car)
                existing[key] = car
                result.created += 1
            elif car.data_hash != staged.data_hash or car.sale_status != staged.sale_status:
                for column, value in values.items():
                    setattr(car, column, value)
                if car.sale_status != SaleStatus.ARCHIVED.value:
                    car.archived_at = None
                car.updated_at = now
                result.updated += 1
            else:
                result.unchanged += 1

            car.last_seen_run_id = run_id
            car.last_api_sync = now

    def _archive_unseen(self, run_id: int, now: datetime) -> int:
        sources = [
            row[0]
            for row in self.db.query(Car.source_site)
            .filter(Car.last_seen_run_id == run_id)
            .distinct()
            .all()
        ]
        if not sources:
            # Nothing was seen: never archive the whole catalog on an empty pass
            logger.warning(f"Run {run_id} saw no listings, skipping archive step")
            return 0

        archived = (
            self.db.query(Car)
            .filter(
                Car.source_site.in_(sources),
                Car.sale_status.in_(VISIBLE_STATUSES),
                (Car.last_seen_run_id.is_(None)) | (Car.last_seen_run_id != run_id),
            )
            .update(
                {
                    Car.sale_status: SaleStatus.ARCHIVED.value,
                    Car.archived_at: now,
                    Car.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if archived:
            logger.info(f"Archived {archived} listings not seen by run {run_id}")
        return archived

    def _record_on_run(self, run_id: int, result: MergeResult, now: datetime) -> None:
        run = self.db.get(SyncRun, run_id)
        if run is None:
            return
        run.records_created = (run.records_created or 0) + result.created
        run.records_updated = (run.records_updated or 0) + result.updated
        run.records_archived = (run.records_archived or 0) + result.archived
        run.merged_at = now

