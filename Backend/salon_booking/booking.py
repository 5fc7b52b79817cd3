"""
Booking Conflict Guard - Core Logic

Single entry point for creating appointments. Owns every correctness
guarantee of the booking path:

    1. Validate the request (before any transaction is opened)
    2. Inside one transaction:
         load service / stylist, check they can take the slot
         conflict check on (stylist, date, slot) and (user, date, slot)
         price via the pricing engine, re-checking the offer
         insert the appointment, atomically redeem the offer
    3. Retry serialization failures with bounded exponential backoff

The conflict check gives a friendly error in the common case; the partial
unique indexes on ``appointments`` are what actually make double-booking
impossible when two requests race past the check together.

Functions:
    create_appointment - book a slot
    get_available_slots - open slots for a stylist on a date
    get_available_dates - upcoming dates with at least one open slot
    run_booking_transaction - retrying transaction runner (shared with lifecycle)
    ensure_slot_free - conflict check (shared with reschedule)
"""

import asyncio
import logging
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from . import queries
from .availability import compute_available_slots, is_within_working_hours, normalize_time_slot
from .core.config import get_settings
from .core.request_context import Actor
from .errors import (
    BookingError,
    ConflictError,
    NotFoundError,
    StateError,
    TransientError,
    ValidationError,
)
from .models import Appointment, AppointmentLocation, Stylist, utc_now, weekday_name
from .pricing import calculate_appointment_price
from .schemas import AddressIn, AppointmentCreateRequest
from .state_machine import seed_history

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = async_sessionmaker[AsyncSession]

# Postgres: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}
REFERENCE_ALPHABET = string.digits + string.ascii_uppercase


# ============================================================================
# TIME HELPERS
# ============================================================================

def get_salon_tz() -> ZoneInfo:
    return ZoneInfo(get_settings().salon_timezone)


def local_today(now: datetime) -> date:
    return now.astimezone(get_salon_tz()).date()


def parse_booking_date(value: Optional[str], field: str = "date") -> date:
    if not value:
        raise ValidationError(f"{field} is required", [{"field": field, "message": "Date is required"}])
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        raise ValidationError("Invalid date format", [{"field": field, "message": "Invalid date format"}])


def ensure_future_date(day: date, now: datetime, field: str = "date") -> date:
    if day <= local_today(now):
        raise ValidationError(
            "Appointment date must be in the future",
            [{"field": field, "message": "Appointment date must be in the future"}],
        )
    return day


def parse_appointment_id(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError("Appointment not found", {"appointment_id": str(value)})


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    """``APT-<last 6 digits of epoch millis>-<3 random [0-9A-Z]>``."""
    moment = now or utc_now()
    millis = str(int(moment.timestamp() * 1000))
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(3))
    return f"APT-{millis[-6:]}-{suffix}"


# ============================================================================
# REQUEST VALIDATION
# ============================================================================

@dataclass
class ValidatedBooking:
    """A booking request that passed every check that needs no database."""
    user_id: str
    service_id: int
    stylist_id: Optional[int]
    date: date
    time_slot: str
    location: AppointmentLocation
    address: Optional[dict]
    notes: Optional[str]
    special_instructions: Optional[str]
    offer_code: Optional[str]


def validate_booking_request(
    request: AppointmentCreateRequest,
    actor: Actor,
    now: datetime,
) -> ValidatedBooking:
    """
    Check the request shape, collecting every field error.

    Raises:
        ValidationError: with ``details`` listing ``{field, message}`` pairs
    """
    errors: list[dict] = []

    def fail(field: str, message: str) -> None:
        errors.append({"field": field, "message": message})

    if request.service_id is None:
        fail("service_id", "Service ID is required")
    if not request.date:
        fail("date", "Date is required")
    if not request.time_slot:
        fail("time_slot", "Time slot is required")
    if not request.location:
        fail("location", "Location is required")

    booking_date: Optional[date] = None
    if request.date:
        try:
            booking_date = ensure_future_date(parse_booking_date(request.date), now)
        except ValidationError as exc:
            errors.extend(exc.details)

    time_slot: Optional[str] = None
    if request.time_slot:
        try:
            time_slot = normalize_time_slot(request.time_slot)
        except ValidationError:
            fail("time_slot", "Invalid time slot format (HH:MM)")

    location: Optional[AppointmentLocation] = None
    if request.location:
        try:
            location = AppointmentLocation(request.location.strip().lower())
        except ValueError:
            fail("location", "Location must be either home or salon")

    address = request.address or AddressIn()
    if location == AppointmentLocation.HOME and not address.is_complete():
        fail("address", "Complete address is required for home appointments")

    if errors:
        raise ValidationError("Validation failed", errors)

    owner_id = request.user_id if actor.is_admin and request.user_id else actor.user_id
    return ValidatedBooking(
        user_id=owner_id,
        service_id=request.service_id,
        stylist_id=request.stylist_id,
        date=booking_date,
        time_slot=time_slot,
        location=location,
        address=address.model_dump() if location == AppointmentLocation.HOME else None,
        notes=(request.notes or "").strip() or None,
        special_instructions=(request.special_instructions or "").strip() or None,
        offer_code=(request.offer_code or "").strip().upper() or None,
    )


# ============================================================================
# CONFLICT CHECKS
# ============================================================================

def check_stylist_can_take(
    stylist: Stylist,
    location: AppointmentLocation,
    day: date,
    time_slot: str,
) -> None:
    """
    Stylist-side checks for a slot.

    Raises:
        StateError: inactive, wrong location, day off, outside hours
        ValidationError: malformed working hours on the stylist record
    """
    if not stylist.is_active:
        raise StateError("Stylist is currently inactive", {"stylist_id": stylist.id})
    if not stylist.is_available_at(location):
        raise StateError(
            f"This stylist is not available for {location.value} appointments",
            {"stylist_id": stylist.id, "location": location.value},
        )
    if not stylist.works_on(day):
        raise StateError(
            "Stylist is not available on this day",
            {"stylist_id": stylist.id, "day": weekday_name(day)},
        )
    if not is_within_working_hours(time_slot, stylist.working_hours_start, stylist.working_hours_end):
        raise StateError(
            "Appointment time is outside stylist working hours",
            {
                "stylist_id": stylist.id,
                "working_hours": {"start": stylist.working_hours_start, "end": stylist.working_hours_end},
            },
        )


async def ensure_slot_free(
    session: AsyncSession,
    user_id: str,
    stylist_id: Optional[int],
    day: date,
    time_slot: str,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Conflict check for a (date, slot) pair.

    Raises:
        ConflictError: the stylist or the user already holds the slot
    """
    scopes = await queries.find_slot_conflicts(
        session, user_id, stylist_id, day, time_slot, exclude_appointment_id
    )
    details = {"date": day.isoformat(), "time_slot": time_slot, "conflict_scope": scopes}
    if "stylist" in scopes:
        raise ConflictError(
            "Stylist is already booked at this time. Please choose a different time slot.", details
        )
    if "user" in scopes:
        raise ConflictError(
            "You already have an appointment at this time. Please choose a different time slot.", details
        )


# ============================================================================
# TRANSACTION RUNNER
# ============================================================================

def is_retryable_db_error(exc: DBAPIError) -> bool:
    """Serialization failures, deadlocks and SQLite writer contention."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    message = str(exc).lower()
    return (
        "could not serialize access" in message
        or "deadlock detected" in message
        or "database is locked" in message
    )


def integrity_conflict_scope(exc: IntegrityError) -> str:
    """Which unique constraint fired: ``reference``, ``stylist``, ``user`` or ``unknown``."""
    message = str(exc.orig if exc.orig is not None else exc).lower()
    # Postgres: "duplicate key value violates unique constraint", SQLite: "UNIQUE constraint failed"
    if "unique constraint" not in message:
        return "unknown"
    if "booking_reference" in message:
        return "reference"
    if "uq_appointment_stylist_active_slot" in message or "stylist_id" in message:
        return "stylist"
    if "uq_appointment_user_active_slot" in message or "user_id" in message:
        return "user"
    return "unknown"


def _backoff_delay(attempt: int) -> float:
    settings = get_settings()
    delay = settings.booking_retry_base_delay_seconds * (2 ** (attempt - 1))
    return min(delay, settings.booking_retry_max_delay_seconds)


async def run_booking_transaction(
    session_factory: SessionFactory,
    operation: Callable[[AsyncSession], Awaitable[T]],
    op_name: str,
) -> T:
    """
    Run ``operation`` inside its own transaction, retrying transient aborts.

    Each attempt opens a fresh session at the configured isolation level and
    is bounded by ``db_operation_timeout_seconds``. Business errors
    (``BookingError``) roll back and propagate immediately.

    Raises:
        ConflictError: unique-index violation, stale version, or retries exhausted
        TransientError: every attempt timed out
        BookingError: integrity violation other than slot or reference uniqueness
    """
    settings = get_settings()
    max_attempts = max(1, settings.booking_max_attempts)
    last_failure = "serialization"

    async def attempt_once() -> T:
        async with session_factory() as session:
            async with session.begin():
                await session.connection(
                    execution_options={"isolation_level": settings.booking_isolation_level}
                )
                return await operation(session)

    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(attempt_once(), timeout=settings.db_operation_timeout_seconds)
        except BookingError:
            raise
        except IntegrityError as exc:
            scope = integrity_conflict_scope(exc)
            if scope == "reference" and attempt < max_attempts:
                logger.warning(f"{op_name}: booking reference collision, regenerating (attempt {attempt})")
                continue
            if scope == "unknown":
                logger.error(f"{op_name}: integrity error unrelated to slot ownership: {exc.orig}")
                raise BookingError(
                    "Appointment could not be stored",
                    {"constraint": str(exc.orig)},
                ) from exc
            logger.info(f"{op_name}: unique constraint rejected write (scope={scope})")
            raise ConflictError(
                "This time slot was just booked. Please choose a different time slot.",
                {"conflict_scope": [scope]},
            ) from exc
        except StaleDataError as exc:
            raise ConflictError(
                "Appointment was modified by another request. Please reload and try again.",
            ) from exc
        except DBAPIError as exc:
            if not is_retryable_db_error(exc):
                raise
            last_failure = "serialization"
            logger.warning(f"{op_name}: transaction aborted ({exc.__class__.__name__}), attempt {attempt}/{max_attempts}")
        except asyncio.TimeoutError:
            last_failure = "timeout"
            logger.warning(f"{op_name}: attempt {attempt}/{max_attempts} timed out")

        if attempt < max_attempts:
            await asyncio.sleep(_backoff_delay(attempt))

    if last_failure == "timeout":
        raise TransientError(f"{op_name} timed out, please retry", {"attempts": max_attempts})
    raise ConflictError(
        "The slot is under heavy contention. Please try again.",
        {"attempts": max_attempts},
    )


# ============================================================================
# CREATE
# ============================================================================

async def _create_in_session(
    session: AsyncSession,
    booking: ValidatedBooking,
    created_by: str,
    now: datetime,
    issued_references: list[str],
) -> Appointment:
    service = await queries.get_service(session, booking.service_id)
    if not service:
        raise NotFoundError("Service not found", {"service_id": booking.service_id})
    if not service.is_active:
        raise StateError("Service is currently inactive", {"service_id": service.id})
    if not service.is_available_at(booking.location):
        raise StateError(
            f"This service is not available at {booking.location.value}",
            {"service_id": service.id, "location": booking.location.value},
        )

    if booking.stylist_id is not None:
        stylist = await queries.get_stylist(session, booking.stylist_id)
        if not stylist:
            raise NotFoundError("Stylist not found", {"stylist_id": booking.stylist_id})
        check_stylist_can_take(stylist, booking.location, booking.date, booking.time_slot)

    await ensure_slot_free(session, booking.user_id, booking.stylist_id, booking.date, booking.time_slot)

    offer = None
    if booking.offer_code:
        offer = await queries.get_offer_by_code(session, booking.offer_code)
        if not offer:
            raise NotFoundError("Invalid offer code", {"offer_code": booking.offer_code})

    price = calculate_appointment_price(service, now, offer)

    reference = generate_booking_reference(now)
    issued_references.append(reference)
    appointment = Appointment(
        booking_reference=reference,
        user_id=booking.user_id,
        service_id=service.id,
        stylist_id=booking.stylist_id,
        date=booking.date,
        time_slot=booking.time_slot,
        location=booking.location,
        address=booking.address,
        notes=booking.notes,
        special_instructions=booking.special_instructions,
        total_price=price.final_price,
        estimated_duration=service.duration,
        offer_code=offer.code if offer is not None else None,
        offer_discount=price.offer_discount if price.offer_discount > 0 else None,
    )
    seed_history(appointment, created_by, now)
    session.add(appointment)
    await session.flush()

    if offer is not None and not await queries.increment_offer_usage(session, offer.id):
        raise StateError("Offer usage limit has been reached", {"offer_code": offer.code})

    return appointment


async def _find_committed_attempt(
    session_factory: SessionFactory,
    user_id: str,
    references: list[str],
) -> Optional[Appointment]:
    """Appointment written by one of our own earlier attempts, if any landed."""
    if not references:
        return None
    async with session_factory() as session:
        return await queries.get_appointment_by_references(session, user_id, references)


async def create_appointment(
    session_factory: SessionFactory,
    request: AppointmentCreateRequest,
    actor: Actor,
    *,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Book an appointment.

    Args:
        session_factory: Session factory; each attempt gets its own session
        request: Booking request
        actor: Caller (owner of the booking unless an admin books for someone)
        now: Aware UTC "now", injectable for tests

    Returns:
        The committed Appointment (status ``pending``)

    Raises:
        ValidationError, NotFoundError, StateError, ConflictError, TransientError
    """
    now = now or utc_now()
    started = time.monotonic()
    logger.info(
        f"Booking attempt by {actor.user_id}: service={request.service_id} stylist={request.stylist_id} "
        f"date={request.date} slot={request.time_slot} location={request.location}"
    )

    issued_references: list[str] = []
    try:
        booking = validate_booking_request(request, actor, now)

        async def operation(session: AsyncSession) -> Appointment:
            return await _create_in_session(session, booking, actor.user_id, now, issued_references)

        try:
            appointment = await run_booking_transaction(session_factory, operation, "create_appointment")
        except (ConflictError, TransientError):
            # A timed-out attempt may still have committed; if so, the later
            # attempts collided with our own row.
            appointment = await _find_committed_attempt(session_factory, booking.user_id, issued_references)
            if appointment is None:
                raise
            logger.warning(
                f"Booking {appointment.booking_reference} for {appointment.user_id} committed by an "
                f"attempt that timed out; returning it"
            )
    except ConflictError as exc:
        logger.info(
            f"Booking conflict for {actor.user_id}: stylist={request.stylist_id} date={request.date} "
            f"slot={request.time_slot} ({exc.message})"
        )
        raise
    except BookingError as exc:
        logger.info(f"Booking failed for {actor.user_id}: {exc.code} {exc.message}")
        raise

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"Booking created {appointment.booking_reference} ({appointment.id}) for {appointment.user_id} "
        f"total={appointment.total_price} in {elapsed_ms}ms"
    )
    return appointment


# ============================================================================
# AVAILABILITY
# ============================================================================

async def _load_bookable_stylist(session: AsyncSession, stylist_id: int) -> Stylist:
    stylist = await queries.get_stylist(session, stylist_id)
    if not stylist or not stylist.is_active:
        raise NotFoundError("Stylist not found or inactive", {"stylist_id": stylist_id})
    return stylist


async def get_available_slots(
    session: AsyncSession,
    stylist_id: int,
    day: date | str,
    *,
    now: Optional[datetime] = None,
) -> list[str]:
    """
    Open 30-minute slots for a stylist on a date.

    Raises:
        ValidationError: bad date or malformed stylist working hours
        NotFoundError: stylist missing or inactive
    """
    settings = get_settings()
    target = day if isinstance(day, date) else parse_booking_date(day)
    stylist = await _load_bookable_stylist(session, stylist_id)
    booked = await queries.booked_slots_for_stylist(session, stylist.id, target)

    local_now = (now or utc_now()).astimezone(get_salon_tz())
    return compute_available_slots(
        stylist.working_days,
        stylist.working_hours_start,
        stylist.working_hours_end,
        target,
        booked,
        interval_minutes=settings.slot_interval_minutes,
        now=local_now,
        exclude_past=settings.exclude_past_slots_today,
    )


async def get_available_dates(
    session: AsyncSession,
    stylist_id: int,
    *,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[dict]:
    """
    Upcoming dates (today through today + ``days``) with at least one open slot.

    Returns:
        ``[{"date", "available_slots", "day_of_week"}, ...]`` in date order
    """
    settings = get_settings()
    horizon = days if days is not None else settings.available_dates_horizon_days
    local_now = (now or utc_now()).astimezone(get_salon_tz())
    start_day = local_now.date()
    end_day = start_day + timedelta(days=horizon)

    stylist = await _load_bookable_stylist(session, stylist_id)
    booked = await queries.booked_slots_for_stylist_between(session, stylist.id, start_day, end_day)

    results: list[dict] = []
    current = start_day
    while current <= end_day:
        slots = compute_available_slots(
            stylist.working_days,
            stylist.working_hours_start,
            stylist.working_hours_end,
            current,
            booked.get(current, set()),
            interval_minutes=settings.slot_interval_minutes,
            now=local_now,
            exclude_past=settings.exclude_past_slots_today,
        )
        if slots:
            results.append(
                {"date": current, "available_slots": len(slots), "day_of_week": weekday_name(current)}
            )
        current += timedelta(days=1)
    return results
