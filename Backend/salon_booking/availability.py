"""
Slot Availability Engine

Pure functions for computing open appointment slots for a stylist.
Nothing here touches the database; callers hand in the stylist's working
pattern and the slots already taken by non-terminal appointments.

Slot generation:
    cursor = working_start
    while cursor < working_end:
        emit HH:MM(cursor) unless booked
        cursor += interval

Example:
    09:00-11:00, booked {"10:00"}  ->  ["09:00", "09:30", "10:30"]
"""

import re
from datetime import date, datetime
from typing import Iterable, Optional

from .errors import ValidationError
from .models import weekday_name

SLOT_INTERVAL_MINUTES = 30
MINUTES_PER_DAY = 24 * 60

TIME_SLOT_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")


def parse_hhmm(value: str, field: str = "time") -> int:
    """
    Convert an ``HH:MM`` string to minutes since midnight.

    Raises:
        ValidationError: missing ``:``, non-numeric parts, or out of range.
    """
    if not isinstance(value, str) or ":" not in value:
        raise ValidationError(f"Invalid {field} format, expected HH:MM", [{"field": field, "value": value}])

    hour_text, _, minute_text = value.strip().partition(":")
    if not hour_text.isdigit() or not minute_text.isdigit():
        raise ValidationError(f"Invalid {field} format, expected HH:MM", [{"field": field, "value": value}])

    hour, minute = int(hour_text), int(minute_text)
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid {field}, out of range", [{"field": field, "value": value}])
    return hour * 60 + minute


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time_slot(value: str) -> str:
    """Validate a requested slot and return it zero-padded (``9:30`` -> ``09:30``)."""
    if not isinstance(value, str) or not TIME_SLOT_PATTERN.match(value.strip()):
        raise ValidationError(
            "Invalid time slot format (HH:MM)", [{"field": "timeSlot", "message": "Invalid time slot format (HH:MM)"}]
        )
    return format_hhmm(parse_hhmm(value, "timeSlot"))


def is_within_working_hours(time_slot: str, working_start: str, working_end: str) -> bool:
    """True when the slot starts inside ``[working_start, working_end)``."""
    start = parse_hhmm(working_start, "workingHours.start")
    end = parse_hhmm(working_end, "workingHours.end")
    return start <= parse_hhmm(time_slot, "timeSlot") < end


def compute_available_slots(
    working_days: Iterable[str],
    working_start: str,
    working_end: str,
    target_date: date,
    booked_slots: Iterable[str],
    *,
    interval_minutes: int = SLOT_INTERVAL_MINUTES,
    now: Optional[datetime] = None,
    exclude_past: bool = False,
) -> list[str]:
    """
    Compute the open slots for one stylist on one date.

    Args:
        working_days: Weekday names the stylist works, any case
        working_start: Start of working hours, ``HH:MM``
        working_end: End of working hours, ``HH:MM`` (exclusive)
        target_date: Calendar day being queried
        booked_slots: ``HH:MM`` values held by non-terminal appointments
        interval_minutes: Slot width
        now: Local "now", only consulted when ``exclude_past`` is set
        exclude_past: Drop slots that already started when ``target_date`` is today

    Returns:
        Ordered list of ``HH:MM`` strings

    Raises:
        ValidationError: malformed working hours
    """
    start = parse_hhmm(working_start, "workingHours.start")
    end = parse_hhmm(working_end, "workingHours.end")

    if weekday_name(target_date) not in {day.lower() for day in working_days}:
        return []

    taken = {format_hhmm(parse_hhmm(slot, "timeSlot")) for slot in booked_slots}

    cutoff = -1
    if exclude_past and now is not None and now.date() == target_date:
        cutoff = now.hour * 60 + now.minute

    slots: list[str] = []
    for minutes in range(start, min(end, MINUTES_PER_DAY), interval_minutes):
        if minutes <= cutoff:
            continue
        slot = format_hhmm(minutes)
        if slot not in taken:
            slots.append(slot)
    return slots
