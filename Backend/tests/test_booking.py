"""
Tests for the booking conflict guard.

Covers request validation, catalog checks, conflict detection, offer
redemption and the behaviour of concurrent bookings against a real
(SQLite) database with the partial unique indexes in place.

Run with: pytest tests/test_booking.py -v
"""

import asyncio
import re
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import future_day
from salon_booking import booking as booking_module
from salon_booking.booking import (
    create_appointment,
    generate_booking_reference,
    get_available_slots,
    integrity_conflict_scope,
    run_booking_transaction,
)
from salon_booking.core.config import get_settings
from salon_booking.core.request_context import Actor
from salon_booking.errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    StateError,
    TransientError,
    ValidationError,
)
from salon_booking.models import (
    Appointment,
    AppointmentStatus,
    Offer,
    Service,
    ServiceCategory,
    Stylist,
    WEEKDAY_NAMES,
)
from salon_booking.schemas import AddressIn, AppointmentCreateRequest


def booking_request(catalog, **overrides) -> AppointmentCreateRequest:
    fields = dict(
        service_id=catalog.service_id,
        stylist_id=catalog.stylist_id,
        date=future_day(3).isoformat(),
        time_slot="10:00",
        location="salon",
    )
    fields.update(overrides)
    return AppointmentCreateRequest(**fields)


# ============================================================================
# HAPPY PATH
# ============================================================================

class TestCreateAppointment:
    """Successful bookings."""

    @pytest.mark.asyncio
    async def test_creates_pending_appointment(self, session_factory, catalog, customer):
        appointment = await create_appointment(session_factory, booking_request(catalog), customer)

        assert appointment.status == AppointmentStatus.PENDING
        assert appointment.user_id == "user-1"
        assert appointment.total_price == Decimal("800.00")
        assert appointment.estimated_duration == 60
        assert appointment.offer_code is None
        assert appointment.version == 1
        assert re.fullmatch(r"APT-\d{6}-[0-9A-Z]{3}", appointment.booking_reference)
        assert len(appointment.status_history) == 1
        assert appointment.status_history[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_offer_applied_and_redeemed(self, session_factory, async_session, catalog, customer):
        appointment = await create_appointment(
            session_factory, booking_request(catalog, offer_code="save10"), customer
        )

        assert appointment.total_price == Decimal("720.00")
        assert appointment.offer_code == "SAVE10"
        assert appointment.offer_discount == Decimal("80.00")

        offer = await async_session.get(Offer, catalog.offer_id)
        assert offer.used_count == 1

    @pytest.mark.asyncio
    async def test_home_booking_keeps_address(self, session_factory, catalog, customer):
        address = AddressIn(street="12 MG Road", city="Pune", state="MH", zip_code="411001")
        appointment = await create_appointment(
            session_factory,
            booking_request(catalog, location="home", address=address),
            customer,
        )
        assert appointment.address["city"] == "Pune"
        assert appointment.address["country"] == "India"

    @pytest.mark.asyncio
    async def test_salon_booking_drops_address(self, session_factory, catalog, customer):
        address = AddressIn(street="12 MG Road", city="Pune", state="MH")
        appointment = await create_appointment(
            session_factory, booking_request(catalog, address=address), customer
        )
        assert appointment.address is None

    @pytest.mark.asyncio
    async def test_without_stylist(self, session_factory, catalog, customer):
        appointment = await create_appointment(
            session_factory, booking_request(catalog, stylist_id=None), customer
        )
        assert appointment.stylist_id is None

    @pytest.mark.asyncio
    async def test_admin_books_on_behalf(self, session_factory, catalog, admin):
        appointment = await create_appointment(
            session_factory, booking_request(catalog, user_id="user-9"), admin
        )
        assert appointment.user_id == "user-9"
        assert appointment.status_history[0]["changedBy"] == "admin-1"

    @pytest.mark.asyncio
    async def test_customer_cannot_book_for_someone_else(self, session_factory, catalog, customer):
        appointment = await create_appointment(
            session_factory, booking_request(catalog, user_id="user-9"), customer
        )
        assert appointment.user_id == "user-1"

    @pytest.mark.asyncio
    async def test_time_slot_is_normalized(self, session_factory, catalog, customer):
        appointment = await create_appointment(
            session_factory, booking_request(catalog, time_slot="9:30"), customer
        )
        assert appointment.time_slot == "09:30"

    def test_booking_reference_format(self):
        for _ in range(20):
            assert re.fullmatch(r"APT-\d{6}-[0-9A-Z]{3}", generate_booking_reference())


# ============================================================================
# VALIDATION
# ============================================================================

class TestValidation:
    """Input errors are reported before any database work."""

    @pytest.mark.asyncio
    async def test_missing_fields_reported_together(self, session_factory, customer):
        with pytest.raises(ValidationError) as exc_info:
            await create_appointment(session_factory, AppointmentCreateRequest(), customer)

        fields = {item["field"] for item in exc_info.value.details}
        assert {"service_id", "date", "time_slot", "location"} <= fields

    @pytest.mark.asyncio
    async def test_today_is_not_bookable(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError):
            await create_appointment(
                session_factory, booking_request(catalog, date=future_day(0).isoformat()), customer
            )

    @pytest.mark.asyncio
    async def test_past_date(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError):
            await create_appointment(
                session_factory, booking_request(catalog, date=future_day(-5).isoformat()), customer
            )

    @pytest.mark.asyncio
    async def test_bad_date_format(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError):
            await create_appointment(session_factory, booking_request(catalog, date="next tuesday"), customer)

    @pytest.mark.asyncio
    async def test_bad_time_slot(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog, time_slot="25:00"), customer)
        assert exc_info.value.details[0]["field"] == "time_slot"

    @pytest.mark.asyncio
    async def test_unknown_location(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError):
            await create_appointment(session_factory, booking_request(catalog, location="office"), customer)

    @pytest.mark.asyncio
    async def test_home_requires_address(self, session_factory, catalog, customer):
        with pytest.raises(ValidationError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog, location="home"), customer)
        assert exc_info.value.details == [
            {"field": "address", "message": "Complete address is required for home appointments"}
        ]


# ============================================================================
# CATALOG CHECKS
# ============================================================================

class TestCatalogChecks:
    """Service, stylist and offer checks inside the booking transaction."""

    @pytest.mark.asyncio
    async def test_unknown_service(self, session_factory, catalog, customer):
        with pytest.raises(NotFoundError):
            await create_appointment(session_factory, booking_request(catalog, service_id=9999), customer)

    @pytest.mark.asyncio
    async def test_inactive_service(self, session_factory, async_session, catalog, customer):
        service = await async_session.get(Service, catalog.service_id)
        service.is_active = False
        await async_session.commit()

        with pytest.raises(StateError):
            await create_appointment(session_factory, booking_request(catalog), customer)

    @pytest.mark.asyncio
    async def test_service_not_offered_at_location(self, session_factory, async_session, customer):
        service = Service(
            name="Massage", category=ServiceCategory.BODY, price=Decimal("500"), duration=45,
            available_at_home=False, available_at_salon=True,
        )
        async_session.add(service)
        await async_session.commit()

        request = AppointmentCreateRequest(
            service_id=service.id,
            date=future_day(3).isoformat(),
            time_slot="10:00",
            location="home",
            address=AddressIn(street="1 Main", city="Pune", state="MH"),
        )
        with pytest.raises(StateError):
            await create_appointment(session_factory, request, customer)

    @pytest.mark.asyncio
    async def test_unknown_stylist(self, session_factory, catalog, customer):
        with pytest.raises(NotFoundError):
            await create_appointment(session_factory, booking_request(catalog, stylist_id=9999), customer)

    @pytest.mark.asyncio
    async def test_stylist_day_off(self, session_factory, async_session, catalog, customer):
        stylist = Stylist(name="Never", working_days=[], working_hours_start="09:00", working_hours_end="18:00")
        async_session.add(stylist)
        await async_session.commit()

        with pytest.raises(StateError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog, stylist_id=stylist.id), customer)
        assert "not available on this day" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_outside_working_hours(self, session_factory, catalog, customer):
        with pytest.raises(StateError):
            await create_appointment(session_factory, booking_request(catalog, time_slot="18:00"), customer)

    @pytest.mark.asyncio
    async def test_stylist_not_doing_home_visits(self, session_factory, async_session, catalog, customer):
        stylist = Stylist(
            name="Salon only", working_days=["monday", "tuesday", "wednesday", "thursday", "friday",
                                              "saturday", "sunday"],
            working_hours_start="09:00", working_hours_end="18:00", available_for_home=False,
        )
        async_session.add(stylist)
        await async_session.commit()

        request = booking_request(
            catalog,
            stylist_id=stylist.id,
            location="home",
            address=AddressIn(street="1 Main", city="Pune", state="MH"),
        )
        with pytest.raises(StateError):
            await create_appointment(session_factory, request, customer)

    @pytest.mark.asyncio
    async def test_invalid_offer_code(self, session_factory, catalog, customer):
        with pytest.raises(NotFoundError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog, offer_code="NOPE"), customer)
        assert exc_info.value.message == "Invalid offer code"

    @pytest.mark.asyncio
    async def test_failed_booking_leaves_no_row(self, session_factory, async_session, catalog, customer):
        with pytest.raises(StateError):
            await create_appointment(session_factory, booking_request(catalog, time_slot="07:00"), customer)
        count = (await async_session.execute(select(func.count()).select_from(Appointment))).scalar_one()
        assert count == 0

    @pytest.mark.asyncio
    async def test_mixed_case_working_days_slot_is_bookable(self, session_factory, async_session, catalog, customer):
        """A slot offered by availability can be booked whatever the weekday casing."""
        stylist = Stylist(
            name="Capitalised",
            working_days=[day.capitalize() for day in WEEKDAY_NAMES],
            working_hours_start="09:00",
            working_hours_end="18:00",
        )
        async_session.add(stylist)
        await async_session.commit()

        day = future_day(3)
        slots = await get_available_slots(async_session, stylist.id, day)
        assert slots

        appointment = await create_appointment(
            session_factory,
            booking_request(catalog, stylist_id=stylist.id, date=day.isoformat(), time_slot=slots[0]),
            customer,
        )
        assert appointment.stylist_id == stylist.id
        assert appointment.time_slot == slots[0]

    @pytest.mark.asyncio
    async def test_check_violation_is_not_a_conflict(self, session_factory, async_session, catalog, customer):
        """A row the schema rejects is a server error, not a slot conflict."""
        service = await async_session.get(Service, catalog.service_id)
        service.duration = 10
        await async_session.commit()

        with pytest.raises(BookingError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog), customer)
        assert not isinstance(exc_info.value, ConflictError)
        assert exc_info.value.code == "INTERNAL_ERROR"
        assert exc_info.value.status_code == 500

        count = (await async_session.execute(select(func.count()).select_from(Appointment))).scalar_one()
        assert count == 0


# ============================================================================
# CONFLICTS
# ============================================================================

class TestConflicts:
    """Double-booking is impossible for a stylist and for a customer."""

    @pytest.mark.asyncio
    async def test_stylist_slot_taken(self, session_factory, catalog, customer, other_customer):
        await create_appointment(session_factory, booking_request(catalog), customer)

        with pytest.raises(ConflictError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog), other_customer)
        assert exc_info.value.details["conflict_scope"] == ["stylist"]

    @pytest.mark.asyncio
    async def test_user_already_booked_at_that_time(self, session_factory, async_session, catalog, customer):
        second = Stylist(
            name="Second", working_days=["monday", "tuesday", "wednesday", "thursday", "friday",
                                         "saturday", "sunday"],
            working_hours_start="09:00", working_hours_end="18:00",
        )
        async_session.add(second)
        await async_session.commit()

        await create_appointment(session_factory, booking_request(catalog), customer)
        with pytest.raises(ConflictError) as exc_info:
            await create_appointment(session_factory, booking_request(catalog, stylist_id=second.id), customer)
        assert exc_info.value.details["conflict_scope"] == ["user"]

    @pytest.mark.asyncio
    async def test_adjacent_slots_do_not_conflict(self, session_factory, catalog, customer, other_customer):
        await create_appointment(session_factory, booking_request(catalog), customer)
        second = await create_appointment(session_factory, booking_request(catalog, time_slot="10:30"), other_customer)
        assert second.time_slot == "10:30"

    @pytest.mark.asyncio
    async def test_cancelled_slot_can_be_rebooked(self, session_factory, catalog, customer, other_customer):
        from salon_booking.lifecycle import cancel_appointment

        first = await create_appointment(session_factory, booking_request(catalog), customer)
        await cancel_appointment(session_factory, first.id, None, customer)

        second = await create_appointment(session_factory, booking_request(catalog), other_customer)
        assert second.status == AppointmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_bookings_same_slot(self, session_factory, async_session, catalog):
        """Eight customers race for one slot: exactly one wins."""
        actors = [Actor(user_id=f"racer-{i}") for i in range(8)]

        results = await asyncio.gather(
            *(create_appointment(session_factory, booking_request(catalog), actor) for actor in actors),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Appointment)]
        failures = [r for r in results if not isinstance(r, Appointment)]
        assert len(successes) == 1
        assert all(isinstance(f, ConflictError) for f in failures), failures

        count = (
            await async_session.execute(
                select(func.count()).select_from(Appointment).where(Appointment.time_slot == "10:00")
            )
        ).scalar_one()
        assert count == 1


# ============================================================================
# OFFER USAGE LIMIT
# ============================================================================

class TestOfferUsageLimit:
    """used_count never exceeds usage_limit."""

    @pytest.mark.asyncio
    async def test_sequential_redemptions_stop_at_limit(self, session_factory, async_session, catalog):
        for i in range(5):
            await create_appointment(
                session_factory,
                booking_request(catalog, time_slot=f"{9 + i:02d}:00", offer_code="SAVE10"),
                Actor(user_id=f"user-{i}"),
            )

        with pytest.raises(StateError) as exc_info:
            await create_appointment(
                session_factory,
                booking_request(catalog, time_slot="15:00", offer_code="SAVE10"),
                Actor(user_id="user-late"),
            )
        assert "usage limit" in exc_info.value.message

        offer = await async_session.get(Offer, catalog.offer_id)
        assert offer.used_count == 5

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_respect_limit(self, session_factory, async_session, catalog, monkeypatch):
        """Ten concurrent bookings (distinct slots) on an offer limited to five: exactly five redeem."""
        # Enough attempts that SQLite writer contention never exhausts a booking
        monkeypatch.setattr(get_settings(), "booking_max_attempts", 10)
        slots = [f"{9 + i // 2:02d}:{'30' if i % 2 else '00'}" for i in range(10)]

        results = await asyncio.gather(
            *(
                create_appointment(
                    session_factory,
                    booking_request(catalog, time_slot=slot, offer_code="SAVE10"),
                    Actor(user_id=f"buyer-{i}"),
                )
                for i, slot in enumerate(slots)
            ),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, Appointment)]
        failures = [r for r in results if not isinstance(r, Appointment)]
        assert len(successes) == 5
        assert len(failures) == 5
        assert all(isinstance(f, StateError) for f in failures), failures

        offer = await async_session.get(Offer, catalog.offer_id)
        assert offer.used_count == 5

        redeemed = (
            await async_session.execute(
                select(func.count()).select_from(Appointment).where(Appointment.offer_code == "SAVE10")
            )
        ).scalar_one()
        assert redeemed == offer.used_count


# ============================================================================
# TRANSACTION RUNNER
# ============================================================================

class TestRunBookingTransaction:
    """Optimistic version check and error mapping."""

    @pytest.mark.asyncio
    async def test_stale_write_becomes_conflict(self, session_factory, catalog, customer, admin):
        from salon_booking.lifecycle import update_appointment_status

        appointment = await create_appointment(session_factory, booking_request(catalog), customer)

        async def operation(session):
            stale = await session.get(Appointment, appointment.id)
            # Another request changes the row after we read it
            await update_appointment_status(session_factory, appointment.id, "confirmed", None, admin)
            stale.notes = "written from a stale read"
            await session.flush()

        with pytest.raises(ConflictError):
            await run_booking_transaction(session_factory, operation, "test_stale_write")

    @pytest.mark.asyncio
    async def test_business_errors_are_not_retried(self, session_factory):
        calls = {"n": 0}

        async def operation(session):
            calls["n"] += 1
            raise StateError("nope")

        with pytest.raises(StateError):
            await run_booking_transaction(session_factory, operation, "test_no_retry")
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(self, session_factory, monkeypatch):
        monkeypatch.setattr(get_settings(), "booking_retry_base_delay_seconds", 0.001)
        calls = {"n": 0}

        async def operation(session):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise OperationalError("INSERT INTO appointments", {}, Exception("database is locked"))
            return "booked"

        assert await run_booking_transaction(session_factory, operation, "test_locked") == "booked"
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_conflict(self, session_factory, monkeypatch):
        monkeypatch.setattr(get_settings(), "booking_retry_base_delay_seconds", 0.001)
        monkeypatch.setattr(get_settings(), "booking_max_attempts", 3)
        calls = {"n": 0}

        async def operation(session):
            calls["n"] += 1
            raise OperationalError("INSERT INTO appointments", {}, Exception("database is locked"))

        with pytest.raises(ConflictError) as exc_info:
            await run_booking_transaction(session_factory, operation, "test_always_locked")
        assert calls["n"] == 3
        assert exc_info.value.details == {"attempts": 3}

    @pytest.mark.asyncio
    async def test_slow_attempts_become_transient(self, session_factory, monkeypatch):
        monkeypatch.setattr(get_settings(), "booking_retry_base_delay_seconds", 0.001)
        monkeypatch.setattr(get_settings(), "booking_max_attempts", 2)
        monkeypatch.setattr(get_settings(), "db_operation_timeout_seconds", 0.05)
        calls = {"n": 0}

        async def operation(session):
            calls["n"] += 1
            await asyncio.sleep(1)

        with pytest.raises(TransientError) as exc_info:
            await run_booking_transaction(session_factory, operation, "test_slow")
        assert calls["n"] == 2
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_other_operational_errors_propagate(self, session_factory):
        calls = {"n": 0}

        async def operation(session):
            calls["n"] += 1
            raise OperationalError("SELECT 1", {}, Exception("no such table: appointments"))

        with pytest.raises(OperationalError):
            await run_booking_transaction(session_factory, operation, "test_no_table")
        assert calls["n"] == 1


# ============================================================================
# INTEGRITY ERROR CLASSIFICATION
# ============================================================================

class TestIntegrityConflictScope:
    """Only slot uniqueness violations count as booking conflicts."""

    def test_sqlite_stylist_slot(self):
        exc = IntegrityError(
            "INSERT", {},
            Exception("UNIQUE constraint failed: appointments.stylist_id, appointments.date, appointments.time_slot"),
        )
        assert integrity_conflict_scope(exc) == "stylist"

    def test_postgres_user_slot(self):
        exc = IntegrityError(
            "INSERT", {},
            Exception('duplicate key value violates unique constraint "uq_appointment_user_active_slot"'),
        )
        assert integrity_conflict_scope(exc) == "user"

    def test_booking_reference(self):
        exc = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: appointments.booking_reference"))
        assert integrity_conflict_scope(exc) == "reference"

    def test_check_constraint_is_unknown(self):
        exc = IntegrityError("INSERT", {}, Exception("CHECK constraint failed: ck_appointment_min_duration"))
        assert integrity_conflict_scope(exc) == "unknown"

    def test_foreign_key_naming_stylist_is_unknown(self):
        exc = IntegrityError(
            "INSERT", {},
            Exception(
                'insert or update on table "appointments" violates foreign key constraint '
                '"appointments_stylist_id_fkey"'
            ),
        )
        assert integrity_conflict_scope(exc) == "unknown"


# ============================================================================
# COMMIT OUTCOME UNKNOWN
# ============================================================================

class TestTimedOutCommit:
    """An attempt that committed before timing out is not reported as a conflict."""

    @pytest.mark.asyncio
    async def test_retry_colliding_with_own_row_returns_it(
        self, session_factory, async_session, catalog, customer, monkeypatch
    ):
        async def commit_then_retry(factory, operation, op_name):
            # First attempt commits but its acknowledgement is lost
            async with factory() as session:
                async with session.begin():
                    await operation(session)
            async with factory() as session:
                async with session.begin():
                    return await operation(session)

        monkeypatch.setattr(booking_module, "run_booking_transaction", commit_then_retry)

        appointment = await create_appointment(session_factory, booking_request(catalog), customer)

        rows = (await async_session.execute(select(Appointment))).scalars().all()
        assert len(rows) == 1
        assert appointment.id == rows[0].id
        assert appointment.user_id == "user-1"
        assert appointment.booking_reference == rows[0].booking_reference

    @pytest.mark.asyncio
    async def test_genuine_conflict_still_raised(
        self, session_factory, catalog, customer, other_customer, monkeypatch
    ):
        await create_appointment(session_factory, booking_request(catalog), other_customer)

        with pytest.raises(ConflictError):
            await create_appointment(session_factory, booking_request(catalog), customer)
