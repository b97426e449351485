"""Shared fixtures: in-memory SQLite database, actors, and request builders."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("USE_REDIS_COUNTERS", "false")
os.environ.setdefault("PUSH_SERVER_KEY", "")

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers every table on Base.metadata
from db.database import Base, utcnow
from models.request import DeliveryRequest
from models.user import User
from services import lifecycle, rate_limiter
from services.actor import ActorContext

SENDER = "sender-1"
RIDER_A = "rider-a"
RIDER_B = "rider-b"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fresh_counters(monkeypatch):
    """Every test starts with empty rate-limit counters."""
    monkeypatch.setattr(rate_limiter, "_store", rate_limiter.MemoryCounterStore())


def _actor(user_id: str) -> ActorContext:
    return ActorContext(
        user_id=user_id,
        device_fingerprint=f"fp-{user_id}",
        ip_address="10.0.0.1",
        user_agent="pytest",
    )


@pytest.fixture
def sender():
    return _actor(SENDER)


@pytest.fixture
def rider_a():
    return _actor(RIDER_A)


@pytest.fixture
def rider_b():
    return _actor(RIDER_B)


@pytest.fixture
def request_data():
    return {
        "pickup_pincode": "018956",
        "pickup_details": "Raffles Place MRT exit A",
        "drop_pincode": "238801",
        "drop_details": "Orchard MRT exit B",
        "item_description": "Two paperback novels",
        "category": "books",
        "item_attributes": {"weight": 0.5},
        "price_offered": 5.0,
        "user_confirmation": True,
    }


@pytest_asyncio.fixture
async def users(db):
    """Sender and two riders as registered profiles."""
    rows = [
        User(id=SENDER, name="Sam Sender", role="sender"),
        User(id=RIDER_A, name="Ann Rider", role="commuter"),
        User(id=RIDER_B, name="Ben Rider", role="both"),
    ]
    db.add_all(rows)
    await db.commit()
    return {u.id: u for u in rows}


@pytest.fixture
def make_request(db):
    """Insert a request row directly in any status, bypassing the service layer."""
    async def _make(sender_id=SENDER, status="created", commuter_id=None, created_at=None, expires_at=None, **extra):
        now = utcnow()
        request = DeliveryRequest(
            sender_id=sender_id,
            commuter_id=commuter_id,
            requested_riders=[],
            pickup_pincode="018956",
            drop_pincode="238801",
            item_description="Two paperback novels",
            category="books",
            item_attributes={},
            otp_pickup="1234",
            otp_drop="5678",
            status=status,
            version=0,
            created_at=created_at or now,
            updated_at=now,
            expires_at=expires_at or now + timedelta(minutes=60),
            **extra,
        )
        db.add(request)
        await db.commit()
        return request
    return _make


@pytest.fixture
def advance(db, sender, rider_a, request_data):
    """Create a request through the service layer and drive it to `status`."""
    steps = [
        "created", "requested", "approved", "waiting_pickup",
        "pickup_otp_pending", "picked", "in_transit", "delivered", "completed",
    ]

    async def _advance(status: str):
        target = steps.index(status)
        request = await lifecycle.create_request(db, dict(request_data), sender)
        if target >= 1:
            request = await lifecycle.request_to_deliver(db, request.id, rider_a)
        if target >= 2:
            request = await lifecycle.approve_rider(db, request.id, rider_a.user_id, sender)
        if target >= 3:
            request = await lifecycle.mark_waiting_pickup(db, request.id, rider_a)
        if target >= 4:
            request = await lifecycle.initiate_pickup_otp(db, request.id, rider_a)
        if target >= 5:
            request = await lifecycle.verify_pickup_otp(db, request.id, request.otp_pickup, rider_a)
        if target >= 6:
            request = await lifecycle.start_transit(db, request.id, rider_a)
        if target >= 7:
            request = await lifecycle.verify_drop_otp(db, request.id, request.otp_drop, rider_a)
        if target >= 8:
            request = await lifecycle.complete_request(db, request.id, sender)
        return request

    return _advance
