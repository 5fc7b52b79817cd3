"""
Appointment API routes.

Thin HTTP wrapper over the booking core. Identity comes from the gateway
headers (see ``core.request_context``); every error raised by the core is a
``BookingError`` and is rendered by the handler registered in ``main``.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from . import lifecycle, queries
from .booking import (
    SessionFactory,
    create_appointment,
    get_available_dates,
    get_available_slots,
    local_today,
    parse_booking_date,
)
from .core.db import get_session, get_session_factory
from .core.request_context import Actor, get_actor
from .core.responses import success_response
from .errors import PolicyError, ValidationError
from .models import AppointmentLocation, utc_now
from .schemas import (
    AppointmentCreateRequest,
    AppointmentListResponse,
    AvailableDate,
    AvailableDatesResponse,
    AvailableSlotsResponse,
    CancelRequest,
    Pagination,
    RatingRequest,
    RescheduleRequest,
    StatusUpdateRequest,
    appointment_to_response,
)

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _appointment_payload(appointment) -> dict:
    return success_response(appointment_to_response(appointment).model_dump(mode="json"))


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise PolicyError("Admin access required")


def _parse_location(value: Optional[str]) -> Optional[AppointmentLocation]:
    if value is None:
        return None
    try:
        return AppointmentLocation(value.lower())
    except ValueError:
        raise ValidationError("Location must be either home or salon", [{"field": "location"}])


# ────────────────────────────────────────────────────────────────
# Booking
# ────────────────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_appointment_endpoint(
    payload: AppointmentCreateRequest,
    actor: Actor = Depends(get_actor),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    appointment = await create_appointment(session_factory, payload, actor)
    return _appointment_payload(appointment)


@router.get("/available-slots")
async def available_slots_endpoint(
    stylist_id: int,
    date: str,
    session: AsyncSession = Depends(get_session),
):
    day = parse_booking_date(date)
    slots = await get_available_slots(session, stylist_id, day)
    body = AvailableSlotsResponse(stylist_id=stylist_id, date=day, available_slots=slots)
    return success_response(body.model_dump(mode="json"))


@router.get("/available-dates")
async def available_dates_endpoint(
    stylist_id: int,
    days: Optional[int] = Query(default=None, ge=1, le=90),
    session: AsyncSession = Depends(get_session),
):
    dates = await get_available_dates(session, stylist_id, days=days)
    body = AvailableDatesResponse(
        stylist_id=stylist_id,
        available_dates=[AvailableDate(**entry) for entry in dates],
    )
    return success_response(body.model_dump(mode="json"))


# ────────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────────

@router.get("/me")
async def my_appointments_endpoint(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="date"),
    sort_order: str = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    # Scope to the caller even for admins: this is "my" list.
    owner = Actor(user_id=actor.user_id)
    appointments, total = await queries.list_appointments(
        session,
        owner,
        status=lifecycle.parse_status(status_filter) if status_filter else None,
        page=page,
        limit=limit,
        sort_by=sort_by,
        descending=sort_order.lower() != "asc",
    )
    body = AppointmentListResponse(
        appointments=[appointment_to_response(a) for a in appointments],
        pagination=Pagination.build(page, limit, total),
    )
    return success_response(body.model_dump(mode="json"))


@router.get("")
async def list_appointments_endpoint(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    location: Optional[str] = None,
    stylist_id: Optional[int] = None,
    date: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="date"),
    sort_order: str = Query(default="desc"),
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    _require_admin(actor)
    appointments, total = await queries.list_appointments(
        session,
        actor,
        status=lifecycle.parse_status(status_filter) if status_filter else None,
        location=_parse_location(location),
        stylist_id=stylist_id,
        day=parse_booking_date(date) if date else None,
        page=page,
        limit=limit,
        sort_by=sort_by,
        descending=sort_order.lower() != "asc",
    )
    body = AppointmentListResponse(
        appointments=[appointment_to_response(a) for a in appointments],
        pagination=Pagination.build(page, limit, total),
    )
    return success_response(body.model_dump(mode="json"))


@router.get("/today")
async def todays_appointments_endpoint(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    _require_admin(actor)
    appointments = await queries.list_active_appointments_for_day(session, local_today(utc_now()))
    body = AppointmentListResponse(appointments=[appointment_to_response(a) for a in appointments])
    return success_response(body.model_dump(mode="json"))


@router.get("/reference/{booking_reference}")
async def appointment_by_reference_endpoint(
    booking_reference: str,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    appointment = await lifecycle.get_appointment_by_reference(session, booking_reference, actor)
    return _appointment_payload(appointment)


@router.get("/{appointment_id}")
async def get_appointment_endpoint(
    appointment_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    appointment = await lifecycle.get_appointment_details(session, appointment_id, actor)
    return _appointment_payload(appointment)


# ────────────────────────────────────────────────────────────────
# Lifecycle
# ────────────────────────────────────────────────────────────────

@router.post("/{appointment_id}/cancel")
async def cancel_appointment_endpoint(
    appointment_id: uuid.UUID,
    payload: CancelRequest,
    actor: Actor = Depends(get_actor),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    appointment = await lifecycle.cancel_appointment(session_factory, appointment_id, payload.reason, actor)
    return _appointment_payload(appointment)


@router.post("/{appointment_id}/reschedule")
async def reschedule_appointment_endpoint(
    appointment_id: uuid.UUID,
    payload: RescheduleRequest,
    actor: Actor = Depends(get_actor),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    appointment = await lifecycle.reschedule_appointment(
        session_factory,
        appointment_id,
        payload.new_date,
        payload.new_time_slot,
        payload.reason,
        actor,
    )
    return _appointment_payload(appointment)


@router.patch("/{appointment_id}/status")
async def update_status_endpoint(
    appointment_id: uuid.UUID,
    payload: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    appointment = await lifecycle.update_appointment_status(
        session_factory, appointment_id, payload.status, payload.reason, actor
    )
    return _appointment_payload(appointment)


@router.post("/{appointment_id}/rating")
async def rating_endpoint(
    appointment_id: uuid.UUID,
    payload: RatingRequest,
    actor: Actor = Depends(get_actor),
    session_factory: SessionFactory = Depends(get_session_factory),
):
    appointment = await lifecycle.add_rating_and_feedback(
        session_factory, appointment_id, payload.rating, payload.feedback, actor
    )
    return _appointment_payload(appointment)
