"""
Pytest configuration and fixtures for async database testing.

Every test gets its own SQLite database file (via aiosqlite) so that
concurrent-booking tests exercise real connections, real transactions and
the partial unique indexes, without needing a Postgres server.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

# Settings are read once at import time; point them at a throwaway database
# before anything from salon_booking is imported.
_IMPORT_DB_DIR = tempfile.mkdtemp(prefix="salon_booking_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_IMPORT_DB_DIR}/import.db"
os.environ.setdefault("SALON_TIMEZONE", "Asia/Kolkata")
os.environ.setdefault("CANCELLATION_WINDOW_MINUTES", "120")
os.environ.setdefault("BOOKING_MAX_ATTEMPTS", "5")
os.environ.setdefault("DB_OPERATION_TIMEOUT_SECONDS", "30")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salon_booking.booking import local_today
from salon_booking.core.db import Base, build_engine
from salon_booking.core.request_context import Actor
from salon_booking.models import (
    Appointment,
    AppointmentLocation,
    DiscountType,
    Offer,
    Service,
    ServiceCategory,
    Stylist,
    UserRole,
    WEEKDAY_NAMES,
    utc_now,
)
from salon_booking.state_machine import seed_history


def future_day(days: int = 3):
    """A salon-local calendar day ``days`` after today."""
    return local_today(utc_now()) + timedelta(days=days)


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async SQLAlchemy engine for a fresh test database.

    Engine is created per test to ensure clean state.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'salon.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def customer():
    return Actor(user_id="user-1")


@pytest.fixture
def other_customer():
    return Actor(user_id="user-2")


@pytest.fixture
def admin():
    return Actor(user_id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
async def catalog(session_factory):
    """
    One service, one stylist and one offer.

    Haircut: 1000 with an active 20% discount (800), home and salon.
    Stylist: every day 09:00-18:00, home and salon.
    SAVE10: 10% off, at most 5 uses.
    """
    now = utc_now()
    async with session_factory() as session:
        service = Service(
            name="Haircut",
            category=ServiceCategory.HAIR,
            price=Decimal("1000.00"),
            duration=60,
            discount_is_active=True,
            discount_percentage=Decimal("20"),
            discount_valid_from=now - timedelta(days=1),
            discount_valid_until=now + timedelta(days=60),
            available_at_home=True,
            available_at_salon=True,
        )
        stylist = Stylist(
            name="Asha",
            working_days=list(WEEKDAY_NAMES),
            working_hours_start="09:00",
            working_hours_end="18:00",
            available_for_home=True,
            available_for_salon=True,
        )
        offer = Offer(
            code="SAVE10",
            title="Ten percent off",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=Decimal("10"),
            min_purchase_amount=Decimal("0"),
            valid_from=now - timedelta(days=1),
            valid_until=now + timedelta(days=60),
            applicable_services=[],
            applicable_categories=[],
            usage_limit=5,
            used_count=0,
        )
        session.add_all([service, stylist, offer])
        await session.commit()
        return SimpleNamespace(service_id=service.id, stylist_id=stylist.id, offer_id=offer.id, offer_code=offer.code)


@pytest.fixture
def make_appointment(session_factory, catalog):
    """
    Insert an appointment directly, bypassing booking validation.

    Useful for appointments in the past or within the cancellation window,
    which the booking path would refuse to create.
    """
    counter = {"n": 0}

    async def _make(**overrides) -> Appointment:
        counter["n"] += 1
        created_at = overrides.pop("created_at", utc_now())
        fields = dict(
            booking_reference=f"APT-TEST{counter['n']:02d}-AAA",
            user_id="user-1",
            service_id=catalog.service_id,
            stylist_id=catalog.stylist_id,
            date=future_day(3),
            time_slot="10:00",
            location=AppointmentLocation.SALON,
            total_price=Decimal("800.00"),
            estimated_duration=60,
        )
        fields.update(overrides)
        async with session_factory() as session:
            appointment = Appointment(**fields)
            seed_history(appointment, fields["user_id"], created_at)
            session.add(appointment)
            await session.commit()
            return appointment

    return _make


@pytest.fixture(scope="function")
async def client(session_factory):
    """
    Create FastAPI AsyncClient with database overrides.

    Both the per-request session and the session factory used by the
    transactional booking paths point at the test database.
    """
    # Import here so the environment above is in place first
    from salon_booking.main import app
    from salon_booking.core.db import get_session, get_session_factory

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def fixed_utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
