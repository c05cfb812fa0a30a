"""
Domain Layer Tests
Value objects, aggregates, the lifecycle table and reconciliation maths
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from domain.entities import (
    BookingSettings, CompositeChild, CompositeParent, Payment, PlainBooking, RoomType,
    SETTINGS_SINGLETON_ID
)
from domain.enums import (
    BookingCalculationMode, BookingStatus, PaymentStatus, PaymentType
)
from domain.exceptions import InvalidStateError, ValidationError
from domain.reconciliation import (
    assert_balanced, calculate_early_checkout, next_status_after_payment,
    refundable_amount, resolve_amount
)
from domain.state_machine import ALLOWED_TRANSITIONS, BookingStateMachine
from domain.value_objects import (
    BookingServiceLine, apply_discount, discount_breakdown,
    normalize_discount, round_money
)

NIGHTS = BookingCalculationMode.NIGHTS
DAYS = BookingCalculationMode.DAYS


def d(day: int) -> date:
    return date(2024, 11, day)


def completed(booking_id, amount) -> Payment:
    return Payment(booking_id=booking_id, amount=Decimal(amount), payment_status=PaymentStatus.COMPLETED)


def plain(check_in=d(1), check_out=d(11), total="1000.00", status=BookingStatus.CHECKED_IN, paid=None):
    booking = PlainBooking(
        client_id=uuid4(),
        room_type_id=uuid4(),
        check_in_date=check_in,
        check_out_date=check_out,
        number_of_pets=1,
        total_price=Decimal(total),
        status=status
    )
    if paid is not None:
        booking.payments.append(completed(booking.booking_id, paid))
    return booking


def composite(parent_total="12000.00", status=BookingStatus.CHECKED_IN):
    """Two segments in nights mode: 01-05 at 1000/night and 05-09 at 2000/night"""
    parent_id = uuid4()
    client_id = uuid4()
    first = CompositeChild(
        parent_booking_id=parent_id, segment_order=1, client_id=client_id,
        room_type_id=uuid4(), check_in_date=d(1), check_out_date=d(5),
        number_of_pets=1, total_price=Decimal("4000.00"), status=status
    )
    second = CompositeChild(
        parent_booking_id=parent_id, segment_order=2, client_id=client_id,
        room_type_id=uuid4(), check_in_date=d(5), check_out_date=d(9),
        number_of_pets=1, total_price=Decimal("8000.00"), status=status
    )
    return CompositeParent(
        booking_id=parent_id, client_id=client_id, room_type_id=first.room_type_id,
        check_in_date=d(1), check_out_date=d(9), number_of_pets=1,
        total_price=Decimal(parent_total), status=status, segments=[first, second]
    )


# ============================================================================
# VALUE OBJECTS
# ============================================================================

class TestMoney:
    """Rounding and discounts"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_round_half_up(self):
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("-2.345")) == Decimal("-2.35")
        assert round_money(Decimal("2.344")) == Decimal("2.34")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_discount_is_clamped(self):
        assert normalize_discount(Decimal("150")) == Decimal("100")
        assert normalize_discount(Decimal("-5")) == Decimal("0")
        assert normalize_discount(Decimal("12.345")) == Decimal("12.35")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_apply_discount(self):
        assert apply_discount(Decimal("1000"), Decimal("15")) == Decimal("850.00")
        assert apply_discount(Decimal("1000"), Decimal("0")) == Decimal("1000.00")
        assert apply_discount(Decimal("1000"), Decimal("200")) == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_discount_on_zero_amount(self):
        assert apply_discount(Decimal("0"), Decimal("10")) == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_discount_breakdown(self):
        total, amount, percent = discount_breakdown(Decimal("1000"), Decimal("12.5"))
        assert total == Decimal("875.00")
        assert amount == Decimal("125.00")
        assert percent == Decimal("12.50")


class TestServiceLine:
    """Additional services charged on a booking"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_service_line_total(self):
        line = BookingServiceLine(name="Grooming", quantity=3, unit_price=Decimal("450.50"))
        assert line.total == Decimal("1351.50")


# ============================================================================
# ENTITIES
# ============================================================================

class TestCatalog:
    """Room types and settings"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_room_type_pricing(self):
        room_type = RoomType(
            name="Standard", max_capacity=2,
            price_per_unit=Decimal("1000"), price_per_additional_pet=Decimal("200")
        )
        base, additional = room_type.price_for(units=3, number_of_pets=2)
        assert base == Decimal("3000.00")
        assert additional == Decimal("600.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_settings_defaults(self):
        booking_settings = BookingSettings()
        assert booking_settings.settings_id == SETTINGS_SINGLETON_ID
        assert booking_settings.calculation_mode == DAYS
        assert booking_settings.check_in_time.hour == 15
        assert booking_settings.check_out_time.hour == 12
        assert booking_settings.is_singleton


class TestBookingAggregate:
    """Totals and payment folding"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_recalculate_total_with_percentage(self):
        booking = plain()
        booking.apply_pricing(Decimal("3000.00"), Decimal("600.00"), Decimal("10"))
        assert booking.total_price == Decimal("3240.00")
        assert booking.discount_amount == Decimal("360.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_recalculate_total_with_fixed_discount(self):
        booking = plain()
        booking.base_price = Decimal("3000.00")
        booking.discount_amount = Decimal("250.00")
        booking.recalculate_total()
        assert booking.total_price == Decimal("2750.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_add_service_raises_total(self):
        booking = plain()
        booking.apply_pricing(Decimal("3000.00"), Decimal("0.00"), Decimal("0"))
        booking.add_service(BookingServiceLine(name="Walk", quantity=2, unit_price=Decimal("150")))
        assert booking.services_price == Decimal("300.00")
        assert booking.total_price == Decimal("3300.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_remaining_amount_goes_negative_on_overpayment(self):
        booking = plain(total="1000.00", paid="1200.00", status=BookingStatus.CHECKED_OUT)
        assert booking.paid_amount == Decimal("1200.00")
        assert booking.remaining_amount == Decimal("-200.00")
        assert booking.credit_balance == Decimal("200.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_cancelled_booking_credit_is_everything_paid(self):
        booking = plain(total="1000.00", paid="400.00", status=BookingStatus.CANCELLED)
        assert booking.remaining_amount == Decimal("600.00")
        assert booking.credit_balance == Decimal("400.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_pending_and_failed_payments_do_not_count(self):
        booking = plain(total="1000.00")
        booking.payments.append(Payment(booking_id=booking.booking_id, amount=Decimal("300")))
        booking.payments.append(Payment(
            booking_id=booking.booking_id, amount=Decimal("300"), payment_status=PaymentStatus.FAILED
        ))
        assert booking.paid_amount == Decimal("0")
        assert booking.has_pending_payments()

    @pytest.mark.unit
    @pytest.mark.domain
    def test_composite_paid_amount_folds_every_segment(self):
        """paid = P0 + sum(Pi) wherever each payment was recorded"""
        parent = composite()
        first, second = parent.ordered_segments()
        parent.payments.append(completed(parent.booking_id, "100.00"))
        first.payments.append(completed(first.booking_id, "200.00"))
        second.payments.append(completed(second.booking_id, "300.00"))
        second.payments.append(Payment(booking_id=second.booking_id, amount=Decimal("50.00")))
        second.payments.append(Payment.refund_record(second.booking_id, Decimal("25.00"), "refund"))

        assert parent.paid_amount == Decimal("575.00")
        assert parent.remaining_amount == parent.total_price - Decimal("575.00")
        assert len(parent.all_payments()) == 5

    @pytest.mark.unit
    @pytest.mark.domain
    def test_composite_add_payment_routes_to_segment(self):
        parent = composite()
        second = parent.ordered_segments()[1]
        parent.add_payment(completed(second.booking_id, "500.00"))
        assert len(parent.segment(second.booking_id).payments) == 1
        assert parent.payments == []
        assert parent.paid_amount == Decimal("500.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_composite_never_occupies_capacity(self):
        parent = composite()
        assert parent.is_composite
        assert not parent.occupies_capacity
        assert all(s.occupies_capacity and s.is_segment for s in parent.segments)

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_composite_parent_cannot_hold_a_room(self):
        with pytest.raises(ValueError, match="cannot be assigned a room"):
            CompositeParent(
                client_id=uuid4(), room_type_id=uuid4(), check_in_date=d(1),
                check_out_date=d(5), number_of_pets=1, assigned_room_id=uuid4()
            )

    @pytest.mark.unit
    @pytest.mark.domain
    def test_validate_segments(self):
        parent = composite()
        parent.validate_segments(NIGHTS)
        with pytest.raises(ValidationError, match="without a gap"):
            parent.validate_segments(DAYS)

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_validate_segments_rejects_bad_order(self):
        parent = composite()
        parent.segments[1].segment_order = 3
        with pytest.raises(ValidationError, match="contiguous"):
            parent.validate_segments(NIGHTS)


class TestPayment:
    """Payment lifecycle"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_confirm_and_reject(self):
        admin = uuid4()
        payment = Payment(booking_id=uuid4(), amount=Decimal("100"))
        payment.confirm(admin)
        assert payment.payment_status == PaymentStatus.COMPLETED
        assert payment.confirmed_by_admin_id == admin

        other = Payment(booking_id=uuid4(), amount=Decimal("100"))
        other.reject(admin, "No transfer received")
        assert other.payment_status == PaymentStatus.FAILED
        assert other.admin_comment == "No transfer received"

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_processed_payment_cannot_change(self):
        payment = Payment(booking_id=uuid4(), amount=Decimal("100"))
        payment.reject(None)
        with pytest.raises(InvalidStateError, match="already been processed"):
            payment.confirm(None)

    @pytest.mark.unit
    @pytest.mark.domain
    def test_refund_record_is_negative(self):
        refund = Payment.refund_record(uuid4(), Decimal("300"), "Refund")
        assert refund.amount == Decimal("-300.00")
        assert refund.payment_status == PaymentStatus.REFUNDED
        assert refund.counts_towards_paid


# ============================================================================
# STATE MACHINE
# ============================================================================

class TestStateMachine:
    """Central legality table"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_terminal_states_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[BookingStatus.CHECKED_OUT] == frozenset()
        assert ALLOWED_TRANSITIONS[BookingStatus.CANCELLED] == frozenset()

    @pytest.mark.unit
    @pytest.mark.domain
    def test_cancel_reachable_from_every_live_state(self):
        for status in BookingStatus:
            if not status.is_terminal:
                assert BookingStateMachine.can_transition(status, BookingStatus.CANCELLED)

    @pytest.mark.unit
    @pytest.mark.domain
    def test_happy_path(self):
        booking = plain(status=BookingStatus.PENDING)
        for target in (
            BookingStatus.WAITING_FOR_PAYMENT_APPROVAL,
            BookingStatus.AWAITING_PAYMENT,
            BookingStatus.PAYMENT_PENDING,
            BookingStatus.CONFIRMED,
            BookingStatus.CHECKED_IN,
            BookingStatus.CHECKED_OUT,
        ):
            BookingStateMachine.apply(booking, target)
        assert booking.status == BookingStatus.CHECKED_OUT

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_illegal_transition_raises(self):
        booking = plain(status=BookingStatus.PENDING)
        with pytest.raises(InvalidStateError, match="Pending to CheckedIn"):
            BookingStateMachine.apply(booking, BookingStatus.CHECKED_IN)
        assert booking.status == BookingStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.domain
    def test_cascade_skips_finished_segments(self):
        parent = composite(status=BookingStatus.CONFIRMED)
        first, second = parent.ordered_segments()
        first.status = BookingStatus.CANCELLED
        BookingStateMachine.apply_cascade(parent, BookingStatus.CHECKED_IN)
        assert parent.status == BookingStatus.CHECKED_IN
        assert first.status == BookingStatus.CANCELLED
        assert second.status == BookingStatus.CHECKED_IN


# ============================================================================
# RECONCILIATION
# ============================================================================

class TestEarlyCheckout:
    """Partial-stay settlement"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_ten_nights_paid_seven_stayed(self):
        """total 1000, 10 units, paid 1000, stayed 7 -> 100 per night, 700 stayed, 300 refund"""
        booking = plain(check_in=d(1), check_out=d(11), total="1000.00", paid="1000.00")
        calc = calculate_early_checkout(booking, d(8), NIGHTS)
        assert calc.total_nights == 10
        assert calc.nights_stayed == 7
        assert calc.nights_unused == 3
        assert calc.price_per_night == Decimal("100.00")
        assert calc.amount_for_stayed_nights == Decimal("700.00")
        assert calc.amount_for_unused_nights == Decimal("300.00")
        assert calc.refund_amount == Decimal("300.00")
        assert calc.amount_due == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.domain
    def test_days_mode_counts_both_endpoints(self):
        booking = plain(check_in=d(1), check_out=d(10), total="1000.00", paid="1000.00")
        calc = calculate_early_checkout(booking, d(7), DAYS)
        assert calc.total_nights == 10
        assert calc.nights_stayed == 7
        assert calc.refund_amount == Decimal("300.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_refund_is_never_negative(self):
        booking = plain(check_in=d(1), check_out=d(11), total="1000.00", paid="500.00")
        calc = calculate_early_checkout(booking, d(8), NIGHTS)
        assert calc.refund_amount == Decimal("0")
        assert calc.amount_due == Decimal("200.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_uneven_price_still_balances(self):
        booking = plain(check_in=d(1), check_out=d(4), total="1000.00", paid="1000.00")
        calc = calculate_early_checkout(booking, d(2), NIGHTS)
        assert calc.price_per_night == Decimal("333.33")
        assert calc.amount_for_stayed_nights == Decimal("333.33")
        assert calc.amount_for_stayed_nights + calc.amount_for_unused_nights == Decimal("1000.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_actual_date_must_be_before_scheduled_check_out(self):
        booking = plain(check_in=d(1), check_out=d(11))
        with pytest.raises(ValidationError, match="must be before"):
            calculate_early_checkout(booking, d(11), NIGHTS)
        with pytest.raises(ValidationError, match="before check-in"):
            calculate_early_checkout(booking, date(2024, 10, 31), NIGHTS)

    @pytest.mark.unit
    @pytest.mark.domain
    def test_composite_settles_per_segment(self):
        """Each segment is prorated at its own price"""
        parent = composite()
        parent.payments.append(completed(parent.booking_id, "12000.00"))
        calc = calculate_early_checkout(parent, d(7), NIGHTS)
        assert calc.total_nights == 8
        assert calc.nights_stayed == 6
        # 4 nights x 1000 + 2 nights x 2000
        assert calc.amount_for_stayed_nights == Decimal("8000.00")
        assert calc.refund_amount == Decimal("4000.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_composite_that_does_not_reconcile_fails_loudly(self):
        parent = composite(parent_total="13000.00")
        with pytest.raises(InvalidStateError, match="does not balance"):
            calculate_early_checkout(parent, d(7), NIGHTS)

    @pytest.mark.unit
    @pytest.mark.domain
    def test_assert_balanced_tolerance(self):
        assert_balanced(Decimal("100.00"), [Decimal("33.33"), Decimal("66.66")])
        with pytest.raises(InvalidStateError):
            assert_balanced(Decimal("100.00"), [Decimal("33.33"), Decimal("66.65")])


class TestCredit:
    """Refundable credit and payment-driven status"""

    @pytest.mark.unit
    @pytest.mark.domain
    def test_refundable_amount_on_cancelled_booking(self):
        booking = plain(total="1000.00", paid="500.00", status=BookingStatus.CANCELLED)
        assert refundable_amount(booking) == Decimal("500.00")

    @pytest.mark.unit
    @pytest.mark.domain
    @pytest.mark.edge_case
    def test_refundable_amount_guards(self):
        live = plain(paid="1500.00", status=BookingStatus.CHECKED_IN)
        with pytest.raises(InvalidStateError):
            refundable_amount(live)

        converted = plain(paid="1500.00", status=BookingStatus.CHECKED_OUT)
        converted.overpayment_converted_to_revenue = True
        with pytest.raises(InvalidStateError, match="converted to revenue"):
            refundable_amount(converted)

        settled = plain(paid="1000.00", status=BookingStatus.CHECKED_OUT)
        with pytest.raises(ValidationError, match="no overpayment"):
            refundable_amount(settled)

    @pytest.mark.unit
    @pytest.mark.domain
    def test_resolve_amount(self):
        assert resolve_amount(Decimal("300.00")) == Decimal("300.00")
        assert resolve_amount(Decimal("300.00"), Decimal("120")) == Decimal("120.00")
        with pytest.raises(ValidationError):
            resolve_amount(Decimal("300.00"), Decimal("0"))
        with pytest.raises(ValidationError, match="exceeds"):
            resolve_amount(Decimal("300.00"), Decimal("300.01"))

    @pytest.mark.unit
    @pytest.mark.domain
    def test_next_status_after_payment(self):
        booking = plain(total="1000.00", status=BookingStatus.AWAITING_PAYMENT)
        booking.required_prepayment_amount = Decimal("300.00")
        assert next_status_after_payment(booking) == BookingStatus.AWAITING_PAYMENT

        booking.payments.append(completed(booking.booking_id, "300.00"))
        assert next_status_after_payment(booking) == BookingStatus.CONFIRMED

        pending = plain(status=BookingStatus.PENDING, paid="1000.00")
        assert next_status_after_payment(pending) == BookingStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.domain
    def test_full_amount_confirms_without_prepayment(self):
        booking = plain(total="1000.00", status=BookingStatus.PAYMENT_PENDING, paid="1000.00")
        booking.prepayment_cancelled = True
        assert next_status_after_payment(booking) == BookingStatus.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.domain
    def test_prepayment_type_tracking(self):
        booking = plain(total="1000.00")
        booking.payments.append(Payment(
            booking_id=booking.booking_id, amount=Decimal("300"),
            payment_status=PaymentStatus.COMPLETED, payment_type=PaymentType.PREPAYMENT
        ))
        assert booking.completed_amount(PaymentType.PREPAYMENT) == Decimal("300")
        assert booking.completed_amount(PaymentType.FULL_PAYMENT) == Decimal("0")
