"""Staging writer: lands mapped records for a run in ``cars_staging``."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.car import CarStaging

logger = logging.getLogger(__name__)

STAGED_COLUMNS = (
    "car_id",
    "source_site",
    "make",
    "model",
    "year",
    "price_cents",
    "mileage_km",
    "fuel",
    "transmission",
    "color",
    "body_type",
    "vin",
    "lot_number",
    "images",
    "sale_status",
    "rank_score",
    "data_hash",
    "raw",
)


class StagingWriter:
    """Upserts mapped rows keyed by (run_id, external_id)."""

    def __init__(self, db: Session):
        self.db = db

    def upsert(self, run_id: int, rows: list[dict[str, Any]], page: int | None = None) -> int:
        """Stage a page of mapped rows.

        A record seen twice in the same run (remote pages shifting under us)
        keeps a single staging row holding the latest values.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        by_external_id: dict[str, dict[str, Any]] = {}
        for row in rows:
            by_external_id[row["external_id"]] = row

        existing = {
            staged.external_id: staged
            for staged in self.db.query(CarStaging)
            .filter(
                CarStaging.run_id == run_id,
                CarStaging.external_id.in_(list(by_external_id)),
            )
            .all()
        }

        now = datetime.utcnow()
        for external_id, row in by_external_id.items():
            values = {column: row.get(column) for column in STAGED_COLUMNS}
            values["car_id"] = row["id"]
            staged = existing.get(external_id)
            if staged is None:
                self.db.add(
                    CarStaging(
                        run_id=run_id,
                        external_id=external_id,
                        page=page,
                        fetched_at=now,
                        **values,
                    )
                )
            else:
                for column, value in values.items():
                    setattr(staged, column, value)
                staged.page = page
                staged.fetched_at = now

        self.db.flush()
        return len(by_external_id)

    def count(self, run_id: int) -> int:
        return (
            self.db.query(func.count(CarStaging.id))
            .filter(CarStaging.run_id == run_id)
            .scalar()
            or 0
        )

    def clear_run(self, run_id: int) -> int:
        """Delete a run's staging rows (only after a successful merge)."""
        deleted = (
            self.db.query(CarStaging)
            .filter(CarStaging.run_id == run_id)
            .delete(synchronize_session=False)
        )
        logger.info(f"Cleared {deleted} staging rows for run {run_id}")
        return deleted
