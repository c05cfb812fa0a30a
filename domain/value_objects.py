"""Domain Value Objects"""
from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from uuid import UUID, uuid4
from typing import Optional, Tuple

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round_money(amount: Decimal) -> Decimal:
    """Round to kopecks, half away from zero"""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_discount(percent: Decimal) -> Decimal:
    """Clamp a discount percentage to [0, 100] with 2 decimal places"""
    percent = Decimal(percent)
    if percent < 0:
        return Decimal("0")
    if percent > HUNDRED:
        return HUNDRED
    return round_money(percent)


def apply_discount(amount: Decimal, percent: Decimal) -> Decimal:
    """Price after a percentage discount; never negative"""
    if amount <= 0:
        return Decimal("0.00")
    normalized = normalize_discount(percent)
    if normalized <= 0:
        return round_money(amount)
    return round_money(amount * (1 - normalized / HUNDRED))


def discount_breakdown(amount: Decimal, percent: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return (total, discount_amount, applied_percent)"""
    normalized = normalize_discount(percent)
    total = apply_discount(amount, normalized)
    return total, round_money(amount - total), normalized


class SegmentRequest(BaseModel):
    """One requested leg of a composite stay"""
    room_type_id: UUID
    check_in: date
    check_out: date
    assigned_room_id: Optional[UUID] = None

    class Config:
        frozen = True


class BookingServiceLine(BaseModel):
    """Additional service charged on a booking"""
    line_id: UUID = Field(default_factory=uuid4)
    name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    service_date: Optional[date] = None

    @property
    def total(self) -> Decimal:
        return round_money(self.unit_price * self.quantity)

    class Config:
        from_attributes = True


class EarlyCheckoutCalculation(BaseModel):
    """Settlement of a stay that ends before its scheduled check-out"""
    booking_id: UUID
    original_check_out_date: date
    actual_check_out_date: date
    total_nights: int
    nights_stayed: int
    nights_unused: int
    total_price: Decimal
    paid_amount: Decimal
    price_per_night: Decimal
    amount_for_stayed_nights: Decimal
    amount_for_unused_nights: Decimal
    refund_amount: Decimal
    amount_due: Decimal
    is_early_checkout: bool = True
    message: str = ""

    class Config:
        frozen = True
