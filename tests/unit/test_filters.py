"""Tests for catalog filters."""

import pytest
from pydantic import ValidationError

from app.api.services.filters import CarFilters


class TestCarFilters:
    """Test suite for filter validation and fingerprinting."""

    def test_blank_strings_are_dropped(self):
        """Test blank text filters behave as absent."""
        filters = CarFilters(make="  ", q="")
        assert filters.make is None
        assert filters.q is None
        assert filters.fingerprint() == CarFilters().fingerprint()

    def test_status_parsed_from_comma_list(self):
        """Test status accepts a comma separated string and is normalized."""
        filters = CarFilters(status="Sold, active,sold")
        assert filters.status == ("active", "sold")

    def test_unknown_status_rejected(self):
        """Test unknown sale statuses fail validation."""
        with pytest.raises(ValidationError):
            CarFilters(status="active,teleported")

    def test_inverted_ranges_rejected(self):
        """Test min greater than max fails validation."""
        with pytest.raises(ValidationError):
            CarFilters(year_min=2020, year_max=2010)
        with pytest.raises(ValidationError):
            CarFilters(price_min=500, price_max=100)

    def test_fingerprint_ignores_case_and_spacing(self):
        """Test equivalent filter sets share a fingerprint."""
        a = CarFilters(make="Toyota", q="corolla  hybrid")
        b = CarFilters(make="toyota", q=" Corolla hybrid ")
        assert a.fingerprint() == b.fingerprint()

    def test_fingerprint_changes_with_filters(self):
        """Test different filter sets get different fingerprints."""
        assert CarFilters(make="Toyota").fingerprint() != CarFilters(make="Honda").fingerprint()
        assert CarFilters().fingerprint() != CarFilters(status="sold").fingerprint()

    def test_without_clears_one_field(self):
        """Test without() drops only the named field."""
        filters = CarFilters(make="Toyota", fuel="Diesel")
        reduced = filters.without("make")
        assert reduced.make is None
        assert reduced.fuel == "Diesel"
        assert filters.make == "Toyota"

    def test_default_predicates_hide_sold_and_archived(self, db_session, car_factory):
        """Test the default filter set only matches visible statuses."""
        from app.models.car import Car

        car_factory(sale_status="active")
        car_factory(sale_status="pending")
        car_factory(sale_status="sold")
        car_factory(sale_status="archived")

        visible = db_session.query(Car).filter(*CarFilters().predicates()).all()
        assert sorted(car.sale_status for car in visible) == ["active", "pending"]

        sold = db_session.query(Car).filter(*CarFilters(status="sold").predicates()).all()
        assert [car.sale_status for car in sold] == ["sold"]

    def test_price_filters_use_whole_units(self, db_session, car_factory):
        """Test price bounds are given in units and compared against cents."""
        from app.models.car import Car

        car_factory(price_cents=999_900)
        car_factory(price_cents=1_000_000)
        car_factory(price_cents=1_500_000)

        rows = (
            db_session.query(Car)
            .filter(*CarFilters(price_min=10_000, price_max=15_000).predicates())
            .all()
        )
        assert sorted(car.price_cents for car in rows) == [1_000_000, 1_500_000]

    def test_text_search_matches_every_term(self, db_session, car_factory):
        """Test q matches make, model, vin and lot number, all terms required."""
        from app.models.car import Car

        car_factory(make="Toyota", model="Corolla", vin="JT123")
        car_factory(make="Toyota", model="Yaris", lot_number="L-100%")
        car_factory(make="Honda", model="Civic")

        def search(q):
            return (
                db_session.query(Car).filter(*CarFilters(q=q).predicates()).all()
            )

        assert {car.model for car in search("toyota")} == {"Corolla", "Yaris"}
        assert {car.model for car in search("toyota jt1")} == {"Corolla"}
        assert {car.model for car in search("100%")} == {"Yaris"}
        assert search("_") == []
