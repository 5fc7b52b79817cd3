"""
Appointment lifecycle operations.

Everything that mutates an existing appointment lives here and goes through
``state_machine``. Each operation:

    - validates its input before opening a transaction
    - loads the appointment scoped to the actor (customers see only their own)
    - applies the state machine change
    - commits with a version check (``Appointment.version``), so a concurrent
      writer makes the loser fail with ConflictError instead of overwriting
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from . import queries, state_machine
from .availability import normalize_time_slot
from .booking import (
    SessionFactory,
    check_stylist_can_take,
    ensure_future_date,
    ensure_slot_free,
    get_salon_tz,
    parse_appointment_id,
    parse_booking_date,
    run_booking_transaction,
)
from .core.config import get_settings
from .core.request_context import Actor
from .errors import NotFoundError, PolicyError, StateError, ValidationError
from .models import Appointment, AppointmentStatus, utc_now

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 200
MAX_FEEDBACK_LENGTH = 500


def _check_reason(reason: Optional[str]) -> Optional[str]:
    reason = (reason or "").strip() or None
    if reason and len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(
            f"Reason cannot exceed {MAX_REASON_LENGTH} characters",
            [{"field": "reason", "message": "Too long"}],
        )
    return reason


async def _load_owned(session: AsyncSession, appointment_id: uuid.UUID, actor: Actor) -> Appointment:
    appointment = await queries.get_appointment(session, appointment_id, actor=actor)
    if not appointment:
        raise NotFoundError("Appointment not found", {"appointment_id": str(appointment_id)})
    return appointment


# ============================================================================
# CANCEL
# ============================================================================

async def cancel_appointment(
    session_factory: SessionFactory,
    appointment_id: uuid.UUID | str,
    reason: Optional[str],
    actor: Actor,
    *,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Cancel an appointment.

    Raises:
        NotFoundError: missing, or not the actor's own appointment
        StateError: already terminal
        PolicyError: customer cancelling inside the cancellation window
        ConflictError: concurrent modification
    """
    now = now or utc_now()
    appointment_id = parse_appointment_id(appointment_id)
    reason = _check_reason(reason)
    settings = get_settings()

    async def operation(session: AsyncSession) -> Appointment:
        appointment = await _load_owned(session, appointment_id, actor)
        state_machine.cancel(
            appointment,
            actor,
            reason,
            now,
            get_salon_tz(),
            settings.cancellation_window_minutes,
        )
        await session.flush()
        return appointment

    return await run_booking_transaction(session_factory, operation, "cancel_appointment")


# ============================================================================
# RESCHEDULE
# ============================================================================

async def reschedule_appointment(
    session_factory: SessionFactory,
    appointment_id: uuid.UUID | str,
    new_date: Optional[str],
    new_time_slot: Optional[str],
    reason: Optional[str],
    actor: Actor,
    *,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Move an appointment to a new date/slot.

    The new slot goes through the same checks as a fresh booking: stylist
    working day and hours, and the conflict check for both the stylist and
    the user, ignoring the appointment being moved.

    Raises:
        ValidationError, NotFoundError, StateError, ConflictError
    """
    now = now or utc_now()
    appointment_id = parse_appointment_id(appointment_id)
    target_date = ensure_future_date(parse_booking_date(new_date, "new_date"), now, "new_date")
    if not new_time_slot:
        raise ValidationError("New time slot is required", [{"field": "new_time_slot", "message": "Required"}])
    target_slot = normalize_time_slot(new_time_slot)
    reason = _check_reason(reason)

    async def operation(session: AsyncSession) -> Appointment:
        appointment = await _load_owned(session, appointment_id, actor)
        if appointment.date == target_date and appointment.time_slot == target_slot:
            raise ValidationError(
                "New slot is the same as the current slot",
                [{"field": "new_time_slot", "message": "Unchanged"}],
            )
        if appointment.status not in state_machine.RESCHEDULABLE_STATUSES:
            raise StateError(
                f"Cannot reschedule an appointment that is {appointment.status.value}",
                {"status": appointment.status.value},
            )

        if appointment.stylist_id is not None:
            stylist = await queries.get_stylist(session, appointment.stylist_id)
            if not stylist:
                raise NotFoundError("Stylist not found", {"stylist_id": appointment.stylist_id})
            check_stylist_can_take(stylist, appointment.location, target_date, target_slot)

        await ensure_slot_free(
            session,
            appointment.user_id,
            appointment.stylist_id,
            target_date,
            target_slot,
            exclude_appointment_id=appointment.id,
        )

        state_machine.apply_reschedule(appointment, target_date, target_slot, actor, reason, now)
        await session.flush()
        return appointment

    return await run_booking_transaction(session_factory, operation, "reschedule_appointment")


# ============================================================================
# STATUS UPDATE (admin)
# ============================================================================

def parse_status(value: AppointmentStatus | str) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown status {value!r}",
            [{"field": "status", "message": f"Must be one of {[s.value for s in AppointmentStatus]}"}],
        )


async def update_appointment_status(
    session_factory: SessionFactory,
    appointment_id: uuid.UUID | str,
    new_status: AppointmentStatus | str,
    reason: Optional[str],
    actor: Actor,
    *,
    now: Optional[datetime] = None,
) -> Appointment:
    """
    Admin status change along the transition table.

    ``cancelled`` carries the cancellation side effects (and the
    late-cancellation flag when inside the window).

    Raises:
        PolicyError: actor is not an admin
        ValidationError: unknown status
        NotFoundError, StateError, ConflictError
    """
    if not actor.is_admin:
        raise PolicyError("Only admins can update appointment status")

    now = now or utc_now()
    appointment_id = parse_appointment_id(appointment_id)
    target = parse_status(new_status)
    reason = _check_reason(reason)
    settings = get_settings()

    async def operation(session: AsyncSession) -> Appointment:
        appointment = await _load_owned(session, appointment_id, actor)
        if target == AppointmentStatus.CANCELLED:
            state_machine.cancel(
                appointment, actor, reason, now, get_salon_tz(), settings.cancellation_window_minutes
            )
        else:
            state_machine.transition(appointment, target, actor, reason, now)
        await session.flush()
        return appointment

    return await run_booking_transaction(session_factory, operation, "update_appointment_status")


# ============================================================================
# RATING & FEEDBACK
# ============================================================================

async def add_rating_and_feedback(
    session_factory: SessionFactory,
    appointment_id: uuid.UUID | str,
    rating: int,
    feedback: Optional[str],
    actor: Actor,
) -> Appointment:
    """
    Let the customer rate a completed appointment, once.

    Raises:
        ValidationError: rating outside 1..5 or feedback too long
        NotFoundError: not the actor's completed appointment
        StateError: already rated
    """
    appointment_id = parse_appointment_id(appointment_id)
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5", [{"field": "rating", "message": "1..5"}])
    feedback = (feedback or "").strip() or None
    if feedback and len(feedback) > MAX_FEEDBACK_LENGTH:
        raise ValidationError(
            f"Feedback cannot exceed {MAX_FEEDBACK_LENGTH} characters",
            [{"field": "feedback", "message": "Too long"}],
        )

    async def operation(session: AsyncSession) -> Appointment:
        appointment = await queries.get_appointment(session, appointment_id)
        if (
            not appointment
            or appointment.user_id != actor.user_id
            or appointment.status != AppointmentStatus.COMPLETED
        ):
            raise NotFoundError("Completed appointment not found", {"appointment_id": str(appointment_id)})
        if appointment.rating is not None:
            raise StateError("Appointment already rated")
        appointment.rating = rating
        appointment.feedback = feedback
        await session.flush()
        return appointment

    return await run_booking_transaction(session_factory, operation, "add_rating_and_feedback")


# ============================================================================
# READS
# ============================================================================

async def get_appointment_details(
    session: AsyncSession,
    appointment_id: uuid.UUID | str,
    actor: Actor,
) -> Appointment:
    return await _load_owned(session, parse_appointment_id(appointment_id), actor)


async def get_appointment_by_reference(
    session: AsyncSession,
    booking_reference: str,
    actor: Actor,
) -> Appointment:
    appointment = await queries.get_appointment_by_reference(session, booking_reference, actor=actor)
    if not appointment:
        raise NotFoundError("Appointment not found", {"booking_reference": booking_reference})
    return appointment
