"""
Appointment State Machine

Status Flow:
    pending     -> confirmed | cancelled
    confirmed   -> in_progress | cancelled | no_show
    in_progress -> completed | cancelled
    rescheduled -> confirmed | cancelled
    completed, cancelled, no_show are terminal

Reschedule is not an entry in the table: it moves the slot of a pending or
confirmed appointment and parks it in ``rescheduled`` until it is confirmed
again (or cancelled).

Every change goes through this module so that ``status_history`` always
ends with the current status and its timestamps never go backwards.
"""

import logging
from datetime import date, datetime, timedelta, tzinfo
from typing import Optional

from .core.request_context import Actor
from .errors import PolicyError, StateError
from .models import Appointment, AppointmentStatus, TERMINAL_STATUSES, ensure_utc

logger = logging.getLogger(__name__)

S = AppointmentStatus

TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.NO_SHOW}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.CANCELLED}),
    S.RESCHEDULED: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

RESCHEDULABLE_STATUSES = frozenset({S.PENDING, S.CONFIRMED})

DEFAULT_REASONS = {
    S.PENDING: "Appointment created",
    S.RESCHEDULED: "Appointment rescheduled",
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _parse_changed_at(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def _record(
    appointment: Appointment,
    status: AppointmentStatus,
    changed_by: str,
    reason: Optional[str],
    now: datetime,
) -> datetime:
    """Set ``status`` and append the matching history entry. Returns the recorded time."""
    history = list(appointment.status_history or [])
    changed_at = now
    if history:
        # Clock skew between app servers must not make history go backwards.
        changed_at = max(now, _parse_changed_at(history[-1]["changedAt"]))

    history.append(
        {
            "status": status.value,
            "changedAt": changed_at.isoformat(),
            "changedBy": changed_by,
            "reason": reason or DEFAULT_REASONS.get(status, f"Status changed to {status.value}"),
        }
    )
    appointment.status = status
    # Reassign so the JSON column is flagged dirty.
    appointment.status_history = history
    return changed_at


def seed_history(appointment: Appointment, created_by: str, now: datetime) -> None:
    """Start the history of a brand new appointment in ``pending``."""
    appointment.status_history = []
    _record(appointment, S.PENDING, created_by, DEFAULT_REASONS[S.PENDING], now)


def transition(
    appointment: Appointment,
    target: AppointmentStatus,
    actor: Actor,
    reason: Optional[str],
    now: datetime,
) -> Appointment:
    """
    Move ``appointment`` to ``target`` if the table allows it.

    Side effects are applied here, next to the transition:
        cancelled -> cancelled_at / cancelled_by / cancellation_reason

    Raises:
        StateError: transition not in the table
    """
    current = appointment.status
    if not can_transition(current, target):
        raise StateError(
            f"Cannot change status from {current.value} to {target.value}",
            {"from": current.value, "to": target.value},
        )

    changed_at = _record(appointment, target, actor.user_id, reason, now)

    if target == S.CANCELLED:
        appointment.cancelled_at = changed_at
        appointment.cancelled_by = actor.user_id
        appointment.cancellation_reason = reason

    logger.info(
        f"Appointment {appointment.booking_reference} {current.value} -> {target.value} by {actor.user_id}"
    )
    return appointment


def is_within_cancellation_window(
    appointment: Appointment,
    now: datetime,
    tz: tzinfo,
    window_minutes: int,
) -> bool:
    """True when ``now`` is later than ``window_minutes`` before the local start."""
    cutoff = appointment.scheduled_start(tz) - timedelta(minutes=window_minutes)
    return now.astimezone(tz) > cutoff


def cancel(
    appointment: Appointment,
    actor: Actor,
    reason: Optional[str],
    now: datetime,
    tz: tzinfo,
    window_minutes: int,
) -> Appointment:
    """
    Cancel an appointment, enforcing the late-cancellation policy.

    Non-admin actors may not cancel within ``window_minutes`` of the start.
    Admins may, and such cancellations are flagged ``late_cancellation``.

    Raises:
        StateError: already terminal
        PolicyError: non-admin inside the window
    """
    if appointment.status in TERMINAL_STATUSES:
        raise StateError(
            f"Appointment is already {appointment.status.value}",
            {"status": appointment.status.value},
        )

    late = is_within_cancellation_window(appointment, now, tz, window_minutes)
    if late and not actor.is_admin:
        hours = window_minutes / 60
        raise PolicyError(
            f"Appointment cannot be cancelled less than {hours:g} hours before the scheduled time",
            {"window_minutes": window_minutes},
        )

    transition(appointment, S.CANCELLED, actor, reason, now)
    if late:
        appointment.late_cancellation = True
        logger.warning(
            f"Late cancellation of {appointment.booking_reference} by admin {actor.user_id} "
            f"inside the {window_minutes} minute window"
        )
    return appointment


def apply_reschedule(
    appointment: Appointment,
    new_date: date,
    new_time_slot: str,
    actor: Actor,
    reason: Optional[str],
    now: datetime,
) -> Appointment:
    """
    Move an appointment to a new slot and park it in ``rescheduled``.

    The caller is responsible for the conflict check on the new slot.

    Raises:
        StateError: current status cannot be rescheduled
    """
    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise StateError(
            f"Cannot reschedule an appointment that is {appointment.status.value}",
            {"status": appointment.status.value},
        )

    previous = appointment.status
    changed_at = _record(appointment, S.RESCHEDULED, actor.user_id, reason, now)

    appointment.rescheduled_from_date = appointment.date
    appointment.rescheduled_from_time_slot = appointment.time_slot
    appointment.rescheduled_at = changed_at
    appointment.rescheduled_by = actor.user_id
    appointment.date = new_date
    appointment.time_slot = new_time_slot

    logger.info(
        f"Appointment {appointment.booking_reference} {previous.value} -> rescheduled "
        f"({appointment.rescheduled_from_date} {appointment.rescheduled_from_time_slot} -> "
        f"{new_date} {new_time_slot}) by {actor.user_id}"
    )
    return appointment


def history_is_consistent(appointment: Appointment) -> bool:
    """Timestamps never decrease and the last entry matches the current status."""
    history = appointment.status_history or []
    if not history:
        return False
    stamps = [_parse_changed_at(entry["changedAt"]) for entry in history]
    if any(later < earlier for earlier, later in zip(stamps, stamps[1:])):
        return False
    return history[-1]["status"] == appointment.status.value
