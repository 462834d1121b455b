import os

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_agrimarket.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import datetime
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agrimarket.main import app
from agrimarket.database import Base, get_db
from agrimarket.config import settings
from agrimarket.routers import booking_router
from agrimarket import crud, models

# A July date keeps seasonal surge out of price assertions
WORK_DATE = datetime.date(2025, 7, 15)


# --- Database ---
@pytest.fixture(scope="function")
def db_session():
    """A fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


# --- Factories ---
@pytest.fixture
def make_item(db_session):
    def _make_item(**overrides) -> models.Item:
        data = {
            "name": "Mahindra 575",
            "category": models.ItemCategory.TRACTORS,
            "owner_id": "supplier-1",
            "location": "Siddipet",
            "purposes": [{"name": "Ploughing", "price": 500}],
            "operator_charge": None,
            "available": True,
            "quantity_available": None,
        }
        data.update(overrides)
        item = models.Item(**data)
        db_session.add(item)
        db_session.commit()
        return item
    return _make_item


@pytest.fixture
def make_booking(db_session):
    def _make_booking(**overrides) -> models.Booking:
        data = {
            "id": crud.generate_booking_id(),
            "farmer_id": "farmer-1",
            "item_category": models.ItemCategory.TRACTORS,
            "work_purpose": "Ploughing",
            "date": WORK_DATE,
            "start_time": datetime.time(9, 0),
            "estimated_duration": 2,
            "location": "Siddipet",
            "status": models.BookingStatus.SEARCHING,
        }
        data.update(overrides)
        booking = models.Booking(**data)
        db_session.add(booking)
        db_session.commit()
        return booking
    return _make_booking


@pytest.fixture
def outbox(db_session):
    """Returns the queued notifications as dicts, oldest first."""
    def _messages(user_id: str | None = None, category: str | None = None) -> list[dict]:
        events = db_session.query(models.OutboxEvent).order_by(models.OutboxEvent.id).all()
        messages = [json.loads(e.payload) for e in events]
        if user_id is not None:
            messages = [m for m in messages if m["user_id"] == user_id]
        if category is not None:
            messages = [m for m in messages if m["category"] == category]
        return messages
    return _messages


# --- Auth ---
def create_test_token(user_id: str = "farmer-1", role: str | None = None) -> str:
    payload = {"sub": user_id}
    if role:
        payload["role"] = role
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "farmer-1", role: str | None = None) -> dict:
        return {"Authorization": create_test_token(user_id, role)}
    return _headers


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Keeps the lifespan from starting Kafka loops, the monitor or a real Redis limiter.
    """
    mocker.patch("agrimarket.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("agrimarket.main.run_booking_monitor", new_callable=AsyncMock)
    mocker.patch("agrimarket.main.consume_catalog_updates", new_callable=AsyncMock)
    mocker.patch("agrimarket.main.FastAPILimiter.init", new_callable=AsyncMock)


@pytest.fixture(scope="function")
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[booking_router.write_limiter] = lambda: None
    app.dependency_overrides[booking_router.read_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
