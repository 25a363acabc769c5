"""Tests for globally sorted keyset pagination."""

import random

import pytest

from app.api.services.car_service import (
    CarService,
    InvalidSortError,
    available_sorts,
    resolve_sort,
)
from app.api.services.cursor import CursorError
from app.api.services.filters import CarFilters


def _walk(service, sort, limit, filters=None):
    """Follow next_cursor from the first page to the last."""
    pages = []
    cursor = None
    while True:
        page = service.list_cars(filters=filters, sort=sort, cursor=cursor, limit=limit)
        pages.append(page)
        if not page.has_next:
            return pages
        cursor = page.next_cursor


def _expected(cars, field, descending):
    """Reference ordering: NULLS LAST, then value, then id ascending."""
    present = [c for c in cars if getattr(c, field) is not None]
    missing = [c for c in cars if getattr(c, field) is None]
    present.sort(key=lambda c: c.id)
    present.sort(key=lambda c: getattr(c, field), reverse=descending)
    missing.sort(key=lambda c: c.id)
    return [c.id for c in present + missing]


@pytest.fixture
def catalog(car_factory):
    """100 visible cars with duplicated prices and some unknown values."""
    rng = random.Random(7)
    cars = []
    for i in range(100):
        cars.append(
            car_factory(
                commit=False,
                make=rng.choice(["Toyota", "Honda", "BMW", "Audi", None]),
                year=rng.choice([2012, 2015, 2018, 2021, None]),
                price_cents=rng.choice([500_000, 750_000, 1_000_000, 2_500_000, None]),
                mileage_km=rng.randint(0, 5) * 10_000,
                rank_score=rng.choice([0.1, 0.45, 0.9]),
            )
        )
    car_factory(sale_status="sold", price_cents=1)
    return cars


class TestResolveSort:
    """Test suite for sort whitelisting."""

    def test_default_sort(self):
        """Test the default sort is price ascending."""
        spec = resolve_sort(None)
        assert spec.key == "price_asc"
        assert not spec.descending

    @pytest.mark.parametrize(
        "alias,key",
        [
            ("price_low", "price_asc"),
            ("price_high", "price_desc"),
            ("year_new", "year_desc"),
            ("mileage_low", "mileage_asc"),
            ("recently_added", "created_desc"),
            ("popular", "rank_desc"),
            ("MAKE_AZ", "make_asc"),
        ],
    )
    def test_aliases(self, alias, key):
        """Test storefront aliases resolve to canonical keys."""
        assert resolve_sort(alias).key == key

    @pytest.mark.parametrize("sort", ["id_asc", "price", "price_sideways", "data_hash_desc", "1;drop"])
    def test_unknown_sort_rejected(self, sort):
        """Test non-whitelisted sorts raise InvalidSortError."""
        with pytest.raises(InvalidSortError):
            resolve_sort(sort)

    def test_available_sorts_lists_aliases(self):
        """Test the advertised sort list includes canonical keys and aliases."""
        sorts = available_sorts()
        assert "rank_desc" in sorts
        assert "popular" in sorts


class TestKeysetPagination:
    """Test suite for cursor traversal of the catalog."""

    @pytest.mark.parametrize(
        "sort,field,descending",
        [
            ("price_asc", "price_cents", False),
            ("price_desc", "price_cents", True),
            ("year_desc", "year", True),
            ("make_asc", "make", False),
            ("mileage_asc", "mileage_km", False),
            ("rank_desc", "rank_score", True),
            ("created_desc", "created_at", True),
        ],
    )
    def test_full_traversal_is_exact_and_ordered(self, db_session, catalog, sort, field, descending):
        """Test walking all pages yields every car once, in global order."""
        db_session.commit()
        pages = _walk(CarService(db_session), sort, limit=7)

        seen = [car.id for page in pages for car in page.items]
        assert len(seen) == 100
        assert len(set(seen)) == 100
        assert seen == _expected(catalog, field, descending)

    def test_page_size_does_not_change_order(self, db_session, catalog):
        """Test traversal order is independent of the page size."""
        db_session.commit()
        service = CarService(db_session)
        by_50 = [c.id for p in _walk(service, "price_asc", 50) for c in p.items]
        by_13 = [c.id for p in _walk(service, "price_asc", 13) for c in p.items]
        assert by_50 == by_13
        assert len(_walk(service, "price_asc", 50)) == 2

    def test_first_page_holds_global_extreme(self, db_session, catalog):
        """Test the first page of price_desc starts with the most expensive car."""
        db_session.commit()
        page = CarService(db_session).list_cars(sort="price_desc", limit=5)
        top = max(c.price_cents for c in catalog if c.price_cents is not None)
        assert page.items[0].price_cents == top

    def test_nulls_sort_last_both_directions(self, db_session, catalog):
        """Test cars without a price come after every priced car."""
        db_session.commit()
        service = CarService(db_session)
        for sort in ("price_asc", "price_desc"):
            prices = [c.price_cents for p in _walk(service, sort, 9) for c in p.items]
            first_null = prices.index(None)
            assert all(p is None for p in prices[first_null:])

    def test_total_matches_traversal(self, db_session, catalog):
        """Test every page reports the same total as the number of rows walked."""
        db_session.commit()
        filters = CarFilters(make="Toyota")
        pages = _walk(CarService(db_session), "year_asc", 4, filters=filters)
        walked = sum(len(p.items) for p in pages)
        expected = sum(1 for c in catalog if c.make == "Toyota")
        assert walked == expected
        assert {p.total for p in pages} == {expected}

    def test_last_page_has_no_cursor(self, db_session, catalog):
        """Test an exactly full last page does not advertise a next page."""
        db_session.commit()
        pages = _walk(CarService(db_session), "price_asc", 25)
        assert len(pages) == 4
        assert pages[-1].next_cursor is None
        assert len(pages[-1].items) == 25

    def test_limit_is_clamped(self, db_session, catalog):
        """Test oversized limits are clamped to the maximum page size."""
        db_session.commit()
        page = CarService(db_session).list_cars(limit=10_000)
        assert page.limit == 100
        assert len(page.items) == 100

    def test_cursor_rejected_under_other_sort(self, db_session, catalog):
        """Test a cursor cannot be reused with a different sort."""
        db_session.commit()
        service = CarService(db_session)
        page = service.list_cars(sort="price_asc", limit=10)
        with pytest.raises(CursorError):
            service.list_cars(sort="price_desc", cursor=page.next_cursor, limit=10)

    def test_cursor_rejected_under_other_filters(self, db_session, catalog):
        """Test a cursor cannot be reused with a different filter set."""
        db_session.commit()
        service = CarService(db_session)
        page = service.list_cars(sort="price_asc", limit=10)
        with pytest.raises(CursorError):
            service.list_cars(
                filters=CarFilters(make="Honda"), sort="price_asc",
                cursor=page.next_cursor, limit=10,
            )

    def test_alias_and_canonical_share_cursors(self, db_session, catalog):
        """Test a cursor from an alias continues under the canonical key."""
        db_session.commit()
        service = CarService(db_session)
        first = service.list_cars(sort="popular", limit=10)
        second = service.list_cars(sort="rank_desc", cursor=first.next_cursor, limit=10)
        assert first.sort == "rank_desc"
        assert not {c.id for c in first.items} & {c.id for c in second.items}

    def test_empty_catalog(self, db_session):
        """Test an empty catalog returns an empty final page."""
        page = CarService(db_session).list_cars()
        assert page.items == []
        assert page.total == 0
        assert page.next_cursor is None

    def test_ties_ordered_by_id(self, db_session, car_factory):
        """Test equal sort values are ordered by id across page boundaries."""
        cars = [car_factory(commit=False, price_cents=100_000) for _ in range(10)]
        db_session.commit()
        pages = _walk(CarService(db_session), "price_asc", 3)
        assert [c.id for p in pages for c in p.items] == sorted(c.id for c in cars)

    def test_get_car_any_status(self, db_session, car_factory):
        """Test get_car returns sold cars and None for unknown ids."""
        sold = car_factory(sale_status="sold")
        service = CarService(db_session)
        assert service.get_car(sold.id).id == sold.id
        assert service.get_car("missing") is None
