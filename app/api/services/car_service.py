"""Car catalog service: globally sorted keyset pagination.

Every page is ordered ``sort column {ASC|DESC} NULLS LAST, id ASC``. The
``id`` tiebreaker makes the order total, so the position after the last row
of a page is exactly ``(sort value, id)``; the next page starts strictly
after it. Walking every page from ``cursor=None`` therefore yields each
matching car exactly once, in global order, regardless of page size.
"""

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from app.api.services.cursor import (
    Cursor,
    decode_cursor,
    encode_cursor,
    validate_cursor,
)
from app.api.services.filters import CarFilters
from app.core.config import get_settings
from app.models.car import Car

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "price": Car.price_cents,
    "year": Car.year,
    "mileage": Car.mileage_km,
    "make": Car.make,
    "created": Car.created_at,
    "rank": Car.rank_score,
}

# Storefront sort names
SORT_ALIASES = {
    "price_low": "price_asc",
    "price_high": "price_desc",
    "year_new": "year_desc",
    "year_old": "year_asc",
    "mileage_low": "mileage_asc",
    "mileage_high": "mileage_desc",
    "make_az": "make_asc",
    "make_za": "make_desc",
    "recently_added": "created_desc",
    "oldest_first": "created_asc",
    "popular": "rank_desc",
}

DEFAULT_SORT = "price_asc"


class InvalidSortError(ValueError):
    """Raised for a sort key outside the whitelist."""


@dataclass(frozen=True)
class SortSpec:
    """Resolved sort: canonical key plus column and direction."""

    key: str
    field: str
    descending: bool

    @property
    def column(self):
        return SORT_COLUMNS[self.field]


def available_sorts() -> list[str]:
    canonical = [f"{field}_{direction}" for field in SORT_COLUMNS for direction in ("asc", "desc")]
    return canonical + list(SORT_ALIASES)


def resolve_sort(sort: str | None) -> SortSpec:
    """Map a requested sort (canonical or alias) onto a ``SortSpec``.

    Raises:
        InvalidSortError: If the sort is not whitelisted
    """
    requested = (sort or DEFAULT_SORT).strip().lower()
    key = SORT_ALIASES.get(requested, requested)
    field, _, direction = key.rpartition("_")
    if field not in SORT_COLUMNS or direction not in ("asc", "desc"):
        raise InvalidSortError(
            f"Invalid sort '{sort}'. Must be one of: {', '.join(available_sorts())}"
        )
    return SortSpec(key=key, field=field, descending=direction == "desc")


def keyset_predicate(spec: SortSpec, value: Any, car_id: str) -> ColumnElement:
    """Rows strictly after ``(value, car_id)`` in NULLS LAST order."""
    column = spec.column
    if value is None:
        # Already inside the trailing NULL block: only the id decides
        return and_(column.is_(None), Car.id > car_id)
    beyond = column < value if spec.descending else column > value
    return or_(
        beyond,
        and_(column == value, Car.id > car_id),
        column.is_(None),
    )


def order_by(spec: SortSpec) -> list:
    column = spec.column
    return [
        column.is_(None),  # NULLS LAST on every backend
        column.desc() if spec.descending else column.asc(),
        Car.id.asc(),
    ]


@dataclass
class CarPage:
    """One page of the catalog."""

    items: list[Car]
    next_cursor: str | None
    total: int
    sort: str
    limit: int

    @property
    def has_next(self) -> bool:
        return self.next_cursor is not None


class CarService:
    """Read side of the car cache."""

    def __init__(self, db: Session):
        self.db = db
        self.settings = get_settings()

    def count(self, filters: CarFilters) -> int:
        return (
            self.db.query(func.count(Car.id))
            .filter(*filters.predicates())
            .scalar()
            or 0
        )

    def list_cars(
        self,
        filters: CarFilters | None = None,
        sort: str | None = None,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> CarPage:
        """Return one page of cars.

        Args:
            filters: Filter set; defaults to all visible cars
            sort: Whitelisted sort key or storefront alias
            cursor: ``next_cursor`` of the previous page, None for the first page
            limit: Page size, clamped to [1, page_max_limit]

        Raises:
            InvalidSortError: Unknown sort key
            CursorError: Malformed cursor, or one issued under another sort or filter set
        """
        filters = filters or CarFilters()
        spec = resolve_sort(sort)
        limit = limit or self.settings.page_default_limit
        limit = max(1, min(limit, self.settings.page_max_limit))
        fingerprint = filters.fingerprint()

        predicates = filters.predicates()
        query = self.db.query(Car).filter(*predicates)

        if cursor:
            position = decode_cursor(cursor)
            validate_cursor(position, spec.key, fingerprint)
            query = query.filter(keyset_predicate(spec, position.value, position.id))

        rows = query.order_by(*order_by(spec)).limit(limit + 1).all()
        items = rows[:limit]

        next_cursor = None
        if len(rows) > limit:
            last = items[-1]
            next_cursor = encode_cursor(
                Cursor(
                    sort=spec.key,
                    value=getattr(last, spec.column.key),
                    id=last.id,
                    fingerprint=fingerprint,
                )
            )

        total = self.count(filters)
        return CarPage(items=items, next_cursor=next_cursor, total=total, sort=spec.key, limit=limit)

    def get_car(self, car_id: str) -> Car | None:
        """Single car by internal id (any sale status)."""
        return self.db.get(Car, car_id)

