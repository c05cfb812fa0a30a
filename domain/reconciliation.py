"""
Money reconciliation for bookings.

Pure functions over loaded aggregates: early-checkout settlement, the
credit a settled booking still holds, and the status a booking reaches
once enough has been paid. Application services call these and persist
the result; nothing here touches a repository.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import List, NamedTuple, Optional

from config.settings import settings
from domain.calendar import calculate_units, format_units
from domain.entities import Booking, CompositeChild, CompositeParent, ZERO
from domain.enums import BookingCalculationMode, BookingStatus
from domain.exceptions import InvalidStateError, ValidationError
from domain.value_objects import EarlyCheckoutCalculation, round_money

logger = logging.getLogger("pet_hotel.reconciliation")


class SegmentSettlement(NamedTuple):
    """Prorated share of one composite segment"""
    segment: CompositeChild
    units: int
    units_stayed: int
    amount_for_stayed: Decimal

    @property
    def started(self) -> bool:
        return self.units_stayed > 0


def prorate(total: Decimal, units: int, units_stayed: int) -> Decimal:
    """Share of total for units_stayed out of units, rounded once"""
    if units <= 0:
        return ZERO
    return round_money(total * units_stayed / units)


def assert_balanced(total: Decimal, parts: List[Decimal], tolerance: Optional[Decimal] = None) -> None:
    """Fail loudly when parts do not add back to total"""
    tolerance = settings.ROUNDING_TOLERANCE if tolerance is None else tolerance
    difference = abs(sum(parts, ZERO) - total)
    if difference > tolerance:
        logger.error("Settlement does not balance: total=%s parts=%s", total, parts)
        raise InvalidStateError(
            f"Settlement does not balance: parts differ from total {total} by {difference}"
        )


def _validate_actual_date(booking: Booking, actual_check_out: date) -> None:
    if actual_check_out >= booking.check_out_date:
        raise ValidationError(
            f"Actual check-out {actual_check_out:%d.%m.%Y} must be before "
            f"the scheduled check-out {booking.check_out_date:%d.%m.%Y}"
        )
    if actual_check_out < booking.check_in_date:
        raise ValidationError(
            f"Actual check-out {actual_check_out:%d.%m.%Y} is before "
            f"check-in {booking.check_in_date:%d.%m.%Y}"
        )


def settle_segments(
    parent: CompositeParent,
    actual_check_out: date,
    mode: BookingCalculationMode
) -> List[SegmentSettlement]:
    """Prorate every segment over its own units and price"""
    settlements = []
    for segment in parent.ordered_segments():
        if segment.status == BookingStatus.CANCELLED:
            continue
        units = segment.units(mode)
        if actual_check_out < segment.check_in_date:
            stayed = 0
        elif actual_check_out >= segment.check_out_date:
            stayed = units
        else:
            stayed = calculate_units(segment.check_in_date, actual_check_out, mode)
        settlements.append(SegmentSettlement(
            segment=segment,
            units=units,
            units_stayed=stayed,
            amount_for_stayed=prorate(segment.total_price, units, stayed)
        ))

    segment_totals = [s.segment.total_price for s in settlements]
    tolerance = settings.ROUNDING_TOLERANCE * max(1, len(settlements))
    assert_balanced(parent.total_price, segment_totals, tolerance)
    return settlements


def calculate_early_checkout(
    booking: Booking,
    actual_check_out: date,
    mode: BookingCalculationMode
) -> EarlyCheckoutCalculation:
    """Settle a stay that ends on actual_check_out instead of the scheduled date"""
    _validate_actual_date(booking, actual_check_out)

    if isinstance(booking, CompositeParent):
        settlements = settle_segments(booking, actual_check_out, mode)
        total_units = sum(s.units for s in settlements)
        units_stayed = sum(s.units_stayed for s in settlements)
        amount_for_stayed = round_money(sum((s.amount_for_stayed for s in settlements), ZERO))
    else:
        total_units = booking.units(mode)
        units_stayed = calculate_units(booking.check_in_date, actual_check_out, mode)
        amount_for_stayed = prorate(booking.total_price, total_units, units_stayed)

    total_price = booking.total_price
    amount_for_unused = round_money(total_price - amount_for_stayed)
    assert_balanced(total_price, [amount_for_stayed, amount_for_unused])

    price_per_night = round_money(total_price / total_units) if total_units else ZERO
    paid = booking.paid_amount
    refund = max(ZERO, round_money(paid - amount_for_stayed))
    due = max(ZERO, round_money(amount_for_stayed - paid))

    symbol = settings.CURRENCY_SYMBOL
    if refund > 0:
        message = f"Refund due to client: {refund} {symbol}"
    elif due > 0:
        message = f"Client owes {due} {symbol} for the stay"
    else:
        message = "Stay is fully settled"
    message = f"Stayed {format_units(mode, units_stayed)} of {total_units}. {message}"

    return EarlyCheckoutCalculation(
        booking_id=booking.booking_id,
        original_check_out_date=booking.check_out_date,
        actual_check_out_date=actual_check_out,
        total_nights=total_units,
        nights_stayed=units_stayed,
        nights_unused=total_units - units_stayed,
        total_price=total_price,
        paid_amount=paid,
        price_per_night=price_per_night,
        amount_for_stayed_nights=amount_for_stayed,
        amount_for_unused_nights=amount_for_unused,
        refund_amount=refund,
        amount_due=due,
        message=message
    )


def refundable_amount(booking: Booking) -> Decimal:
    """Credit held on a settled booking that can still leave it"""
    if booking.status not in (BookingStatus.CHECKED_OUT, BookingStatus.CANCELLED):
        raise InvalidStateError(
            f"Booking must be checked out or cancelled, current status is {booking.status.value}"
        )
    if booking.overpayment_converted_to_revenue:
        raise InvalidStateError("Overpayment has already been converted to revenue")
    credit = round_money(booking.credit_balance)
    if credit <= settings.ROUNDING_TOLERANCE:
        raise ValidationError("Booking has no overpayment to return")
    return credit


def resolve_amount(available: Decimal, custom_amount: Optional[Decimal] = None) -> Decimal:
    """Default to the whole available credit; a custom amount must fit inside it"""
    if custom_amount is None:
        return round_money(available)
    amount = round_money(custom_amount)
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount > available:
        raise ValidationError(f"Amount {amount} exceeds the available credit {available}")
    return amount


def next_status_after_payment(booking: Booking) -> BookingStatus:
    """Status a booking reaches with its current completed payments"""
    if booking.status not in (BookingStatus.AWAITING_PAYMENT, BookingStatus.PAYMENT_PENDING):
        return booking.status
    paid = booking.paid_amount
    tolerance = settings.ROUNDING_TOLERANCE
    required = booking.required_prepayment_amount
    if booking.prepayment_cancelled or required <= 0:
        required = booking.total_price
    if paid + tolerance >= required or paid + tolerance >= booking.total_price:
        return BookingStatus.CONFIRMED
    if booking.has_pending_payments():
        return BookingStatus.PAYMENT_PENDING
    return BookingStatus.AWAITING_PAYMENT
