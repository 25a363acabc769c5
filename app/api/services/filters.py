"""Car filter set and the SQL predicate built from it.

The same ``CarFilters.predicates()`` drives the count query, the page query
and (minus one field) each facet, so totals and pages always agree.
"""

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import func, or_
from sqlalchemy.sql.elements import ColumnElement

from app.models.car import VISIBLE_STATUSES, Car, SaleStatus

# Exact-match text filters compared case-insensitively
TEXT_FILTERS = {
    "make": Car.make,
    "model": Car.model,
    "fuel": Car.fuel,
    "transmission": Car.transmission,
    "body_type": Car.body_type,
    "color": Car.color,
}

# Columns searched by the free-text query
SEARCH_COLUMNS = (Car.make, Car.model, Car.vin, Car.lot_number)


class CarFilters(BaseModel):
    """Validated catalog filters. Prices are whole currency units."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    make: str | None = None
    model: str | None = None
    year_min: int | None = Field(None, ge=1900, le=2100)
    year_max: int | None = Field(None, ge=1900, le=2100)
    price_min: float | None = Field(None, ge=0)
    price_max: float | None = Field(None, ge=0)
    mileage_max: int | None = Field(None, ge=0)
    fuel: str | None = None
    transmission: str | None = None
    body_type: str | None = None
    color: str | None = None
    q: str | None = Field(None, max_length=200)
    status: tuple[str, ...] | None = None

    @field_validator(
        "make", "model", "fuel", "transmission", "body_type", "color", "q",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, v: Any) -> Any:
        """Accept a comma separated string or a list of sale statuses."""
        if v is None or v == "" or v == []:
            return None
        if isinstance(v, str):
            v = v.split(",")
        values = sorted({str(item).strip().lower() for item in v if str(item).strip()})
        allowed = {s.value for s in SaleStatus}
        unknown = [item for item in values if item not in allowed]
        if unknown:
            raise ValueError(f"Unknown sale status: {', '.join(unknown)}")
        return tuple(values) or None

    @model_validator(mode="after")
    def check_ranges(self) -> "CarFilters":
        if self.year_min is not None and self.year_max is not None and self.year_min > self.year_max:
            raise ValueError("year_min must not exceed year_max")
        if self.price_min is not None and self.price_max is not None and self.price_min > self.price_max:
            raise ValueError("price_min must not exceed price_max")
        return self

    def without(self, field: str) -> "CarFilters":
        """Same filters with one field cleared (used by facet counts)."""
        return self.model_copy(update={field: None})

    def normalized(self) -> dict[str, Any]:
        values = self.model_dump(exclude_none=True)
        for key in TEXT_FILTERS:
            if key in values:
                values[key] = values[key].lower()
        if "q" in values:
            values["q"] = " ".join(values["q"].lower().split())
        if "status" in values:
            values["status"] = list(values["status"])
        return values

    def fingerprint(self) -> str:
        """Short stable digest of the effective filter set (bound into cursors)."""
        encoded = json.dumps(self.normalized(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]

    def predicates(self) -> list[ColumnElement]:
        clauses: list[ColumnElement] = []

        statuses = self.status or VISIBLE_STATUSES
        clauses.append(Car.sale_status.in_(list(statuses)))

        for name, column in TEXT_FILTERS.items():
            value = getattr(self, name)
            if value is not None:
                clauses.append(func.lower(column) == value.lower())

        if self.year_min is not None:
            clauses.append(Car.year >= self.year_min)
        if self.year_max is not None:
            clauses.append(Car.year <= self.year_max)
        if self.price_min is not None:
            clauses.append(Car.price_cents >= int(round(self.price_min * 100)))
        if self.price_max is not None:
            clauses.append(Car.price_cents <= int(round(self.price_max * 100)))
        if self.mileage_max is not None:
            clauses.append(Car.mileage_km <= self.mileage_max)

        if self.q:
            for term in self.q.lower().split():
                clauses.append(
                    or_(*(func.lower(column).contains(term, autoescape=True) for column in SEARCH_COLUMNS))
                )

        return clauses
