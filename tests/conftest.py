"""Shared test fixtures.

Settings are read once (``get_settings`` is cached), so the test environment
is configured before any application module is imported.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "development"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["REMOTE_API_BASE_URL"] = "https://remote.test"
os.environ["REMOTE_API_KEY"] = "test-key"

from datetime import datetime, timedelta  # noqa: E402
from itertools import count  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app import models  # noqa: E402,F401
from app.core.database import Base, SessionLocal, engine  # noqa: E402
from app.core.sync.mapper import compute_data_hash, make_car_id  # noqa: E402
from app.models.car import Car  # noqa: E402


@pytest.fixture(autouse=True)
def reset_database():
    """Fresh schema for every test (shared in-memory connection)."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    """Database session for direct service tests."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture
def client():
    """FastAPI test client (lifespan not started: no scheduler)."""
    from app.main import app

    return TestClient(app)


@pytest.fixture
def car_factory(db_session):
    """Insert cars with sensible defaults; returns the created Car."""
    sequence = count(1)
    base_time = datetime(2024, 1, 1, 12, 0, 0)

    def create(external_id: str | None = None, commit: bool = True, **overrides) -> Car:
        n = next(sequence)
        external_id = external_id or f"ext-{n:05d}"
        source_site = overrides.pop("source_site", "auctionsapi")
        car_id = overrides.pop("id", None) or make_car_id(source_site, external_id)
        values = {
            "make": "Toyota",
            "model": "Corolla",
            "year": 2018,
            "price_cents": 1_000_000,
            "mileage_km": 50_000,
            "fuel": "Petrol",
            "transmission": "Automatic",
            "color": "White",
            "body_type": "Sedan",
            "images": [],
            "sale_status": "active",
            "rank_score": 0.5,
            "created_at": base_time + timedelta(minutes=n),
        }
        values.update(overrides)
        car = Car(
            id=car_id,
            external_id=external_id,
            source_site=source_site,
            data_hash=compute_data_hash(values),
            **values,
        )
        db_session.add(car)
        if commit:
            db_session.commit()
        return car

    return create
