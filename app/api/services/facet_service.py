"""Facet counts and numeric ranges for the catalog filters."""

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.api.services.filters import CarFilters
from app.models.car import Car

logger = logging.getLogger(__name__)

FACET_FIELDS = {
    "make": Car.make,
    "fuel": Car.fuel,
    "transmission": Car.transmission,
    "body_type": Car.body_type,
    "color": Car.color,
}


class FacetService:
    """Counts values of each facet field over the filtered car set.

    Each facet ignores its own filter, so picking ``make=BMW`` still shows
    how many cars every other make would give.
    """

    def __init__(self, db: Session):
        self.db = db

    def facet_counts(self, filters: CarFilters | None = None) -> dict[str, dict[str, int]]:
        filters = filters or CarFilters()
        facets: dict[str, dict[str, int]] = {}

        for field, column in FACET_FIELDS.items():
            count = func.count(Car.id)
            rows = (
                self.db.query(column, count)
                .filter(*filters.without(field).predicates())
                .filter(column.isnot(None), column != "")
                .group_by(column)
                .order_by(count.desc(), column.asc())
                .all()
            )
            facets[field] = {value: total for value, total in rows if total}

        return facets

    def ranges(self, filters: CarFilters | None = None) -> dict[str, Any]:
        """Min/max of year, price and mileage over the filtered set."""
        filters = filters or CarFilters()
        row = (
            self.db.query(
                func.min(Car.year),
                func.max(Car.year),
                func.min(Car.price_cents),
                func.max(Car.price_cents),
                func.min(Car.mileage_km),
                func.max(Car.mileage_km),
            )
            .filter(*filters.predicates())
            .one()
        )
        year_min, year_max, price_min, price_max, mileage_min, mileage_max = row

        def to_units(cents: int | None) -> float | None:
            return cents / 100 if cents is not None else None

        return {
            "year": {"min": year_min, "max": year_max},
            "price": {"min": to_units(price_min), "max": to_units(price_max)},
            "mileage": {"min": mileage_min, "max": mileage_max},
        }
