"""
Appointment Pricing Engine

Pure functions for pricing a booking. All functions are stateless and
deterministic given their inputs.

Pricing Formula:
    discounted_price = max(0, price - price * service_discount_pct / 100)
    final_price = max(0, discounted_price - offer_discount(discounted_price))

Offer discount:
    percentage -> min(amount * value / 100, max_discount_amount or amount)
    fixed      -> min(value, amount)
    free       -> amount

Example:
    1000 with an active 20% service discount = 800
    offer SAVE10 (10%, uncapped) on 800        = 720
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .errors import PricingError, StateError
from .models import DiscountType, Offer, Service, ensure_utc

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass
class PriceCalculation:
    """Result of a price calculation with full breakdown."""

    base_price: Decimal         # service list price
    service_discount: Decimal   # amount taken off by the service's own discount
    discounted_price: Decimal   # base_price - service_discount
    offer_discount: Decimal     # amount taken off by the promotional offer
    final_price: Decimal        # chargeable amount
    offer_code: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "base_price": float(self.base_price),
            "service_discount": float(self.service_discount),
            "discounted_price": float(self.discounted_price),
            "offer_discount": float(self.offer_discount),
            "final_price": float(self.final_price),
            "offer_code": self.offer_code,
        }


def to_money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def _guard_non_negative(value: Decimal, label: str) -> Decimal:
    if value < 0:
        raise PricingError(f"Negative intermediate {label}: {value}")
    return value


def is_service_discount_active(service: Service, now: datetime) -> bool:
    """
    Check whether the service's own discount applies at ``now``.

    A missing ``discount_valid_from`` / ``discount_valid_until`` leaves that
    side of the window open.
    """
    if not service.discount_is_active or not service.discount_percentage:
        return False
    valid_from = ensure_utc(service.discount_valid_from)
    valid_until = ensure_utc(service.discount_valid_until)
    if valid_from is not None and now < valid_from:
        return False
    if valid_until is not None and now > valid_until:
        return False
    return True


def check_offer_applicable(
    offer: Offer,
    amount: Decimal,
    service_id: int,
    category: Optional[str],
    now: datetime,
) -> tuple[bool, Optional[str]]:
    """
    Evaluate whether an offer can be applied to a booking amount.

    Returns:
        (can_apply, reason) - reason is None when the offer applies
    """
    if not offer.is_currently_valid(now):
        if offer.is_exhausted():
            return False, "Offer usage limit has been reached"
        return False, "Offer is not currently valid"

    if amount < to_money(offer.min_purchase_amount or 0):
        return False, f"Minimum purchase amount of {to_money(offer.min_purchase_amount)} required"

    if offer.applicable_services and service_id not in offer.applicable_services:
        return False, "Offer not applicable to selected services"

    if offer.applicable_categories and category and category not in offer.applicable_categories:
        return False, "Offer not applicable to selected category"

    return True, None


def calculate_offer_discount(offer: Offer, amount: Decimal) -> Decimal:
    """Discount granted by ``offer`` on ``amount``, never more than ``amount``."""
    value = to_money(offer.discount_value)
    if offer.discount_type == DiscountType.PERCENTAGE:
        discount = (amount * value / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
        cap = to_money(offer.max_discount_amount) if offer.max_discount_amount is not None else amount
        return min(discount, cap)
    if offer.discount_type == DiscountType.FIXED:
        return min(value, amount)
    return amount  # free


def calculate_appointment_price(
    service: Service,
    now: datetime,
    offer: Optional[Offer] = None,
) -> PriceCalculation:
    """
    Price a booking for ``service`` at ``now``, optionally applying ``offer``.

    Args:
        service: Service snapshot (price + discount window)
        now: Aware UTC datetime used for every validity window
        offer: Promotional offer to apply, if any

    Returns:
        PriceCalculation with full breakdown

    Raises:
        StateError: offer supplied but not applicable
        PricingError: a negative intermediate amount (catalog data defect)
    """
    base_price = _guard_non_negative(to_money(service.price), "service price")

    service_discount = ZERO
    if is_service_discount_active(service, now):
        service_discount = (base_price * to_money(service.discount_percentage) / HUNDRED).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
        _guard_non_negative(service_discount, "service discount")
    discounted_price = max(ZERO, base_price - service_discount)

    offer_discount = ZERO
    if offer is not None:
        category = service.category.value if service.category is not None else None
        can_apply, reason = check_offer_applicable(offer, discounted_price, service.id, category, now)
        if not can_apply:
            raise StateError(reason or "Offer cannot be applied to this booking", {"offer_code": offer.code})
        offer_discount = _guard_non_negative(calculate_offer_discount(offer, discounted_price), "offer discount")

    final_price = max(ZERO, discounted_price - offer_discount)

    return PriceCalculation(
        base_price=base_price,
        service_discount=service_discount,
        discounted_price=discounted_price,
        offer_discount=offer_discount,
        final_price=final_price,
        offer_code=offer.code if offer is not None else None,
    )
