"""
Appointment query helpers.

This module is the central place for reads the booking core performs and
for the one write that must be a single statement (the offer usage
increment). Ownership scoping lives here too: non-admin actors only ever
see their own appointments.

Usage:
    from .queries import get_service, booked_slots_for_stylist

    service = await get_service(session, service_id)
    taken = await booked_slots_for_stylist(session, stylist_id, day)
"""

import uuid
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .core.request_context import Actor
from .models import (
    Appointment,
    AppointmentLocation,
    AppointmentStatus,
    NON_TERMINAL_STATUSES,
    Offer,
    Service,
    Stylist,
)

ACTIVE_STATUSES = tuple(sorted(NON_TERMINAL_STATUSES, key=lambda s: s.value))


# ────────────────────────────────────────────────────────────────
# Catalog lookups
# ────────────────────────────────────────────────────────────────

async def get_service(session: AsyncSession, service_id: int) -> Optional[Service]:
    result = await session.execute(select(Service).where(Service.id == service_id))
    return result.scalar_one_or_none()


async def get_stylist(session: AsyncSession, stylist_id: int) -> Optional[Stylist]:
    result = await session.execute(select(Stylist).where(Stylist.id == stylist_id))
    return result.scalar_one_or_none()


async def get_offer_by_code(session: AsyncSession, code: str) -> Optional[Offer]:
    result = await session.execute(select(Offer).where(Offer.code == code.strip().upper()))
    return result.scalar_one_or_none()


async def increment_offer_usage(session: AsyncSession, offer_id: int) -> bool:
    """
    Atomically redeem one use of an offer.

    Single conditional UPDATE, so concurrent redemptions can neither lose an
    increment nor push ``used_count`` past ``usage_limit``.

    Returns:
        False when the offer is exhausted (no row updated)
    """
    result = await session.execute(
        update(Offer)
        .where(
            Offer.id == offer_id,
            or_(Offer.usage_limit.is_(None), Offer.used_count < Offer.usage_limit),
        )
        .values(used_count=Offer.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ────────────────────────────────────────────────────────────────
# Appointment lookups
# ────────────────────────────────────────────────────────────────

def scoped_appointments(actor: Optional[Actor]) -> Select:
    """
    SELECT over appointments visible to ``actor``.

    Admins (and internal callers passing ``None``) see everything.
    """
    stmt = select(Appointment)
    if actor is not None and not actor.is_admin:
        stmt = stmt.where(Appointment.user_id == actor.user_id)
    return stmt


async def get_appointment(
    session: AsyncSession,
    appointment_id: uuid.UUID,
    actor: Optional[Actor] = None,
) -> Optional[Appointment]:
    result = await session.execute(scoped_appointments(actor).where(Appointment.id == appointment_id))
    return result.scalar_one_or_none()


async def get_appointment_by_reference(
    session: AsyncSession,
    booking_reference: str,
    actor: Optional[Actor] = None,
) -> Optional[Appointment]:
    result = await session.execute(
        scoped_appointments(actor).where(Appointment.booking_reference == booking_reference.strip().upper())
    )
    return result.scalar_one_or_none()


async def get_appointment_by_references(
    session: AsyncSession,
    user_id: str,
    booking_references: Sequence[str],
) -> Optional[Appointment]:
    """First of the user's appointments carrying one of ``booking_references``."""
    result = await session.execute(
        select(Appointment)
        .where(Appointment.user_id == user_id, Appointment.booking_reference.in_(list(booking_references)))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def booked_slots_for_stylist(
    session: AsyncSession,
    stylist_id: int,
    day: date,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> list[str]:
    """Time slots held by non-terminal appointments for a stylist on a day."""
    stmt = select(Appointment.time_slot).where(
        Appointment.stylist_id == stylist_id,
        Appointment.date == day,
        Appointment.status.in_(ACTIVE_STATUSES),
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def booked_slots_for_stylist_between(
    session: AsyncSession,
    stylist_id: int,
    start_day: date,
    end_day: date,
) -> dict[date, set[str]]:
    """Booked slots per day for ``[start_day, end_day]`` in one round trip."""
    result = await session.execute(
        select(Appointment.date, Appointment.time_slot).where(
            Appointment.stylist_id == stylist_id,
            Appointment.date >= start_day,
            Appointment.date <= end_day,
            Appointment.status.in_(ACTIVE_STATUSES),
        )
    )
    booked: dict[date, set[str]] = {}
    for day, slot in result.all():
        booked.setdefault(day, set()).add(slot)
    return booked


async def find_slot_conflicts(
    session: AsyncSession,
    user_id: str,
    stylist_id: Optional[int],
    day: date,
    time_slot: str,
    exclude_appointment_id: Optional[uuid.UUID] = None,
) -> list[str]:
    """
    Which scopes already hold ``(day, time_slot)``.

    Returns a subset of ``["stylist", "user"]``.
    """
    ownership = [Appointment.user_id == user_id]
    if stylist_id is not None:
        ownership.append(Appointment.stylist_id == stylist_id)

    stmt = select(Appointment.user_id, Appointment.stylist_id).where(
        Appointment.date == day,
        Appointment.time_slot == time_slot,
        Appointment.status.in_(ACTIVE_STATUSES),
        or_(*ownership),
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.id != exclude_appointment_id)

    scopes: list[str] = []
    for row_user_id, row_stylist_id in (await session.execute(stmt)).all():
        if stylist_id is not None and row_stylist_id == stylist_id and "stylist" not in scopes:
            scopes.append("stylist")
        if row_user_id == user_id and "user" not in scopes:
            scopes.append("user")
    return scopes


# ────────────────────────────────────────────────────────────────
# Listings
# ────────────────────────────────────────────────────────────────

SORTABLE_FIELDS = {
    "date": Appointment.date,
    "created_at": Appointment.created_at,
    "total_price": Appointment.total_price,
    "status": Appointment.status,
}


async def list_appointments(
    session: AsyncSession,
    actor: Optional[Actor] = None,
    *,
    status: Optional[AppointmentStatus] = None,
    location: Optional[AppointmentLocation] = None,
    stylist_id: Optional[int] = None,
    day: Optional[date] = None,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "date",
    descending: bool = True,
) -> tuple[Sequence[Appointment], int]:
    """
    Paginated appointment listing.

    Returns:
        (appointments, total_matching)
    """
    stmt = scoped_appointments(actor)
    if status is not None:
        stmt = stmt.where(Appointment.status == status)
    if location is not None:
        stmt = stmt.where(Appointment.location == location)
    if stylist_id is not None:
        stmt = stmt.where(Appointment.stylist_id == stylist_id)
    if day is not None:
        stmt = stmt.where(Appointment.date == day)

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()

    column = SORTABLE_FIELDS.get(sort_by, Appointment.date)
    order = column.desc() if descending else column.asc()
    result = await session.execute(
        stmt.order_by(order, Appointment.time_slot).offset((page - 1) * limit).limit(limit)
    )
    return result.scalars().all(), total


async def list_active_appointments_for_day(session: AsyncSession, day: date) -> Sequence[Appointment]:
    """Non-terminal appointments on ``day`` ordered by time slot."""
    result = await session.execute(
        select(Appointment)
        .where(Appointment.date == day, Appointment.status.in_(ACTIVE_STATUSES))
        .order_by(Appointment.time_slot)
    )
    return result.scalars().all()
