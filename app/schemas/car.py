"""Car catalog Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CarOut(BaseModel):
    """One cached listing as served by the read API."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: str
    source_site: str
    title: str
    make: str | None = None
    model: str | None = None
    year: int | None = None
    price: float | None = Field(None, description="Price in whole currency units")
    price_cents: int | None = None
    mileage_km: int | None = None
    fuel: str | None = None
    transmission: str | None = None
    color: str | None = None
    body_type: str | None = None
    vin: str | None = None
    lot_number: str | None = None
    images: list[str] = Field(default_factory=list)
    sale_status: str
    rank_score: float | None = None
    last_api_sync: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CarDetail(CarOut):
    """Single listing including the unmapped source fields."""

    raw: dict | None = None
    archived_at: datetime | None = None


class CarPageResponse(BaseModel):
    """Keyset page of cars."""

    model_config = ConfigDict(populate_by_name=True)

    items: list[CarOut]
    next_cursor: str | None = Field(None, alias="nextCursor")
    total: int
    has_next: bool = Field(False, alias="hasNext")
    sort: str
    limit: int


class NumericRange(BaseModel):
    min: float | None = None
    max: float | None = None


class RangesResponse(BaseModel):
    """Min/max of the numeric filters over the filtered set."""

    year: NumericRange
    price: NumericRange
    mileage: NumericRange
