import uuid
from datetime import date, datetime, time, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as PgEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .core.db import Base


def enum_values(enum_cls: type[Enum]) -> list[str]:
    """Persist enum values (``"pending"``) rather than member names (``"PENDING"``)."""
    return [member.value for member in enum_cls]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Alias so the Appointment.date column does not shadow the type in annotations.
CalendarDate = date

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def weekday_name(value: date) -> str:
    return WEEKDAY_NAMES[value.weekday()]


# ============================================================================
# ENUMS
# ============================================================================

class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)
NON_TERMINAL_STATUSES = frozenset(set(AppointmentStatus) - TERMINAL_STATUSES)

# Predicate shared by the partial unique indexes; must list NON_TERMINAL_STATUSES.
ACTIVE_SLOT_PREDICATE = "status IN ('pending', 'confirmed', 'in_progress', 'rescheduled')"


class AppointmentLocation(str, Enum):
    HOME = "home"
    SALON = "salon"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    FREE = "free"


class ServiceCategory(str, Enum):
    HAIR = "hair"
    NAIL = "nail"
    BODY = "body"
    SKIN = "skin"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


# ============================================================================
# CATALOG (read-only to the booking core)
# ============================================================================

class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[ServiceCategory] = mapped_column(
        PgEnum(ServiceCategory, name="service_category", values_callable=enum_values),
        nullable=False,
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)

    discount_is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("0"), nullable=False
    )
    discount_valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    discount_valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    available_at_home: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    available_at_salon: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_service_price_non_negative"),
        CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="ck_service_discount_percentage_range",
        ),
    )

    def is_available_at(self, location: AppointmentLocation) -> bool:
        if location == AppointmentLocation.HOME:
            return self.available_at_home
        return self.available_at_salon


class Stylist(Base):
    __tablename__ = "stylists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    # Lower-case weekday names, e.g. ["monday", "tuesday"]
    working_days: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    working_hours_start: Mapped[str] = mapped_column(String(5), nullable=False)
    working_hours_end: Mapped[str] = mapped_column(String(5), nullable=False)
    available_for_home: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    available_for_salon: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def is_available_at(self, location: AppointmentLocation) -> bool:
        if location == AppointmentLocation.HOME:
            return self.available_for_home
        return self.available_for_salon

    def works_on(self, value: date) -> bool:
        return weekday_name(value) in {day.lower() for day in (self.working_days or [])}


class Offer(Base):
    __tablename__ = "offers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    discount_type: Mapped[DiscountType] = mapped_column(
        PgEnum(DiscountType, name="offer_discount_type", values_callable=enum_values),
        default=DiscountType.PERCENTAGE,
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    min_purchase_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    max_discount_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    applicable_services: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    applicable_categories: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer)  # None = unlimited
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        CheckConstraint("valid_from <= valid_until", name="ck_offer_validity_window"),
        CheckConstraint("used_count >= 0", name="ck_offer_used_count_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_offer_usage_within_limit",
        ),
    )

    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit

    def is_currently_valid(self, now: datetime) -> bool:
        return (
            self.is_active
            and ensure_utc(self.valid_from) <= now <= ensure_utc(self.valid_until)
            and not self.is_exhausted()
        )


# ============================================================================
# APPOINTMENT
# ============================================================================

class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_reference: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False, index=True)
    stylist_id: Mapped[Optional[int]] = mapped_column(ForeignKey("stylists.id"), nullable=True, index=True)

    date: Mapped[CalendarDate] = mapped_column(Date, nullable=False)
    time_slot: Mapped[str] = mapped_column(String(5), nullable=False)
    location: Mapped[AppointmentLocation] = mapped_column(
        PgEnum(AppointmentLocation, name="appointment_location", values_callable=enum_values),
        default=AppointmentLocation.SALON,
        nullable=False,
    )
    address: Mapped[Optional[dict]] = mapped_column(JSON)
    notes: Mapped[Optional[str]] = mapped_column(String(500))
    special_instructions: Mapped[Optional[str]] = mapped_column(String(1000))

    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    estimated_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    offer_code: Mapped[Optional[str]] = mapped_column(String(20))
    offer_discount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    status: Mapped[AppointmentStatus] = mapped_column(
        PgEnum(AppointmentStatus, name="appointment_status", values_callable=enum_values),
        default=AppointmentStatus.PENDING,
        nullable=False,
    )
    # [{"status", "changedAt", "changedBy", "reason"}, ...] oldest first
    status_history: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)

    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(200))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64))
    late_cancellation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    rescheduled_from_date: Mapped[Optional[CalendarDate]] = mapped_column(Date)
    rescheduled_from_time_slot: Mapped[Optional[str]] = mapped_column(String(5))
    rescheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rescheduled_by: Mapped[Optional[str]] = mapped_column(String(64))

    rating: Mapped[Optional[int]] = mapped_column(Integer)
    feedback: Mapped[Optional[str]] = mapped_column(String(500))

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("total_price >= 0", name="ck_appointment_total_price_non_negative"),
        CheckConstraint("estimated_duration >= 15", name="ck_appointment_min_duration"),
        CheckConstraint(
            "rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_appointment_rating_range"
        ),
        Index(
            "uq_appointment_stylist_active_slot",
            "stylist_id",
            "date",
            "time_slot",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_PREDICATE),
            sqlite_where=text(ACTIVE_SLOT_PREDICATE),
        ),
        Index(
            "uq_appointment_user_active_slot",
            "user_id",
            "date",
            "time_slot",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_PREDICATE),
            sqlite_where=text(ACTIVE_SLOT_PREDICATE),
        ),
        Index("ix_appointment_user_date", "user_id", "date"),
        Index("ix_appointment_date_status", "date", "status"),
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def rescheduled_from(self) -> Optional[dict]:
        if self.rescheduled_from_date is None:
            return None
        return {
            "date": self.rescheduled_from_date,
            "timeSlot": self.rescheduled_from_time_slot,
            "rescheduledAt": self.rescheduled_at,
            "rescheduledBy": self.rescheduled_by,
        }

    def scheduled_start(self, tz: tzinfo) -> datetime:
        """Local start of the appointment as an aware datetime."""
        hour, minute = (int(part) for part in self.time_slot.split(":"))
        return datetime.combine(self.date, time(hour, minute), tzinfo=tz)
