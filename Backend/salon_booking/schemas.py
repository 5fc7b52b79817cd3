"""
Request/response models for the appointment API.

Request models are deliberately permissive about shapes the booking core
validates itself (dates, time slots, location, address completeness) so
that those failures surface as typed ``ValidationError``s with per-field
details instead of framework-level errors.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import Appointment, AppointmentLocation, AppointmentStatus


# ============================================================================
# REQUEST MODELS
# ============================================================================

class AddressIn(BaseModel):
    """Customer address for home appointments."""

    street: Optional[str] = Field(default=None, max_length=255)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    country: str = Field(default="India", max_length=100)

    @field_validator("street", "city", "state", "zip_code", "country")
    @classmethod
    def strip_text(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    def is_complete(self) -> bool:
        return bool(self.street and self.city and self.state)


class AppointmentCreateRequest(BaseModel):
    """Request body for booking an appointment."""

    service_id: Optional[int] = Field(default=None, description="Service to book")
    stylist_id: Optional[int] = Field(default=None, description="Stylist, if the customer picked one")
    date: Optional[str] = Field(default=None, description="Appointment day (YYYY-MM-DD)")
    time_slot: Optional[str] = Field(default=None, description="Start time, HH:MM (24h)")
    location: Optional[str] = Field(default=None, description="home or salon")
    address: Optional[AddressIn] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    special_instructions: Optional[str] = Field(default=None, max_length=1000)
    offer_code: Optional[str] = Field(default=None, max_length=20)
    # Admins may book on behalf of a customer
    user_id: Optional[str] = Field(default=None, max_length=64)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class RescheduleRequest(BaseModel):
    new_date: Optional[str] = Field(default=None, description="New day (YYYY-MM-DD)")
    new_time_slot: Optional[str] = Field(default=None, description="New start time, HH:MM")
    reason: Optional[str] = Field(default=None, max_length=200)


class StatusUpdateRequest(BaseModel):
    status: str
    reason: Optional[str] = Field(default=None, max_length=200)


class RatingRequest(BaseModel):
    rating: int
    feedback: Optional[str] = Field(default=None, max_length=500)


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class StatusHistoryEntry(BaseModel):
    status: AppointmentStatus
    changedAt: datetime
    changedBy: Optional[str] = None
    reason: Optional[str] = None


class RescheduledFrom(BaseModel):
    date: date
    timeSlot: str
    rescheduledAt: Optional[datetime] = None
    rescheduledBy: Optional[str] = None


class AppointmentResponse(BaseModel):
    """Full appointment as returned by every appointment endpoint."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    booking_reference: str
    user_id: str
    service_id: int
    stylist_id: Optional[int]
    date: date
    time_slot: str
    location: AppointmentLocation
    address: Optional[dict[str, Any]]
    notes: Optional[str]
    special_instructions: Optional[str]

    total_price: Decimal
    estimated_duration: int
    offer_code: Optional[str]
    offer_discount: Optional[Decimal]

    status: AppointmentStatus
    status_history: list[StatusHistoryEntry]
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    cancelled_by: Optional[str]
    late_cancellation: bool
    rescheduled_from: Optional[RescheduledFrom]

    rating: Optional[int]
    feedback: Optional[str]
    version: int


class AvailableSlotsResponse(BaseModel):
    stylist_id: int
    date: date
    available_slots: list[str]


class AvailableDate(BaseModel):
    date: date
    available_slots: int
    day_of_week: str


class AvailableDatesResponse(BaseModel):
    stylist_id: int
    available_dates: list[AvailableDate]


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_appointments: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_appointments=total,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class AppointmentListResponse(BaseModel):
    appointments: list[AppointmentResponse]
    pagination: Optional[Pagination] = None


def appointment_to_response(appointment: Appointment) -> AppointmentResponse:
    """Convert an Appointment to AppointmentResponse."""
    return AppointmentResponse.model_validate(appointment)
