"""Car listing cache models.

``Car`` is the durable main cache table served by the read API.
``CarStaging`` is the landing area written by sync workers and merged into
``cars`` once a run (or a periodic checkpoint of a long run) completes.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class SaleStatus(str, PyEnum):
    """Listing lifecycle states."""

    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    ARCHIVED = "archived"


# Statuses shown by the catalog unless a caller asks for a specific status
VISIBLE_STATUSES = (SaleStatus.ACTIVE.value, SaleStatus.PENDING.value)


class Car(Base):
    """One cached vehicle listing."""

    __tablename__ = "cars"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source_site: Mapped[str] = mapped_column(String(50), nullable=False)

    make: Mapped[str | None] = mapped_column(String(100))
    model: Mapped[str | None] = mapped_column(String(100))
    year: Mapped[int | None] = mapped_column(Integer)
    price_cents: Mapped[int | None] = mapped_column(BigInteger)
    mileage_km: Mapped[int | None] = mapped_column(BigInteger)
    fuel: Mapped[str | None] = mapped_column(String(50))
    transmission: Mapped[str | None] = mapped_column(String(50))
    color: Mapped[str | None] = mapped_column(String(50))
    body_type: Mapped[str | None] = mapped_column(String(50))
    vin: Mapped[str | None] = mapped_column(String(50))
    lot_number: Mapped[str | None] = mapped_column(String(50))
    images: Mapped[list] = mapped_column(JSON, default=list)
    sale_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SaleStatus.ACTIVE.value
    )
    rank_score: Mapped[float | None] = mapped_column(Float)

    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    raw: Mapped[dict | None] = mapped_column(JSON)  # unmapped source fields
    last_seen_run_id: Mapped[int | None] = mapped_column(Integer)
    last_api_sync: Mapped[datetime | None] = mapped_column(DateTime)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("source_site", "external_id", name="uq_cars_source_external"),
        # Keyset pagination: each whitelisted sort column paired with the id tiebreaker
        Index("ix_cars_price_id", "price_cents", "id"),
        Index("ix_cars_year_id", "year", "id"),
        Index("ix_cars_mileage_id", "mileage_km", "id"),
        Index("ix_cars_make_id", "make", "id"),
        Index("ix_cars_created_id", "created_at", "id"),
        Index("ix_cars_rank_id", "rank_score", "id"),
        # Filters, facets and archiving
        Index("ix_cars_sale_status", "sale_status"),
        Index("ix_cars_make_model", "make", "model"),
        Index("ix_cars_source_seen", "source_site", "last_seen_run_id"),
    )

    def __repr__(self) -> str:
        return f"<Car {self.id} {self.year} {self.make} {self.model}>"

    @property
    def title(self) -> str:
        return " ".join(str(part) for part in (self.year, self.make, self.model) if part)

    @property
    def price(self) -> float | None:
        """Price in whole currency units."""
        return self.price_cents / 100 if self.price_cents is not None else None


class CarStaging(Base):
    """Mapped record landed by a sync run, keyed by (run_id, external_id)."""

    __tablename__ = "cars_staging"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    car_id: Mapped[str] = mapped_column(String(36), nullable=False)
    source_site: Mapped[str] = mapped_column(String(50), nullable=False)
    page: Mapped[int | None] = mapped_column(Integer)

    make: Mapped[str | None] = mapped_column(String(100))
    model: Mapped[str | None] = mapped_column(String(100))
    year: Mapped[int | None] = mapped_column(Integer)
    price_cents: Mapped[int | None] = mapped_column(BigInteger)
    mileage_km: Mapped[int | None] = mapped_column(BigInteger)
    fuel: Mapped[str | None] = mapped_column(String(50))
    transmission: Mapped[str | None] = mapped_column(String(50))
    color: Mapped[str | None] = mapped_column(String(50))
    body_type: Mapped[str | None] = mapped_column(String(50))
    vin: Mapped[str | None] = mapped_column(String(50))
    lot_number: Mapped[str | None] = mapped_column(String(50))
    images: Mapped[list] = mapped_column(JSON, default=list)
    sale_status: Mapped[str] = mapped_column(String(20), nullable=False)
    rank_score: Mapped[float | None] = mapped_column(Float)
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    raw: Mapped[dict | None] = mapped_column(JSON)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("run_id", "external_id", name="uq_cars_staging_run_external"),
        Index("ix_cars_staging_run", "run_id"),
    )

    def __repr__(self) -> str:
        return f"<CarStaging run={self.run_id} {self.external_id}>"
