"""Booking lifecycle transitions"""
from typing import Dict, FrozenSet

from domain.entities import Booking, CompositeParent
from domain.enums import BookingStatus
from domain.exceptions import InvalidStateError

S = BookingStatus

ALLOWED_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    S.PENDING: frozenset({S.WAITING_FOR_PAYMENT_APPROVAL, S.AWAITING_PAYMENT, S.CONFIRMED, S.CANCELLED}),
    S.WAITING_FOR_PAYMENT_APPROVAL: frozenset({S.AWAITING_PAYMENT, S.CONFIRMED, S.CANCELLED}),
    S.AWAITING_PAYMENT: frozenset({S.PAYMENT_PENDING, S.CONFIRMED, S.CANCELLED}),
    S.PAYMENT_PENDING: frozenset({S.AWAITING_PAYMENT, S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CHECKED_IN, S.CANCELLED}),
    S.CHECKED_IN: frozenset({S.CHECKED_OUT, S.CANCELLED}),
    S.CHECKED_OUT: frozenset(),
    S.CANCELLED: frozenset(),
}

# Statuses from which payments may still be taken
PAYABLE_STATUSES = frozenset({S.AWAITING_PAYMENT, S.PAYMENT_PENDING, S.CONFIRMED, S.CHECKED_IN})

# Statuses that hold money eligible for refund, transfer or conversion
SETTLED_STATUSES = frozenset({S.CHECKED_OUT, S.CANCELLED})


class BookingStateMachine:
    """Single authority over which status changes are legal"""

    @staticmethod
    def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    @classmethod
    def ensure_can_transition(cls, booking: Booking, target: BookingStatus) -> None:
        if not cls.can_transition(booking.status, target):
            raise InvalidStateError(
                f"Cannot move booking {booking.booking_id} from "
                f"{booking.status.value} to {target.value}"
            )

    @classmethod
    def apply(cls, booking: Booking, target: BookingStatus) -> Booking:
        cls.ensure_can_transition(booking, target)
        booking.status = target
        booking.touch()
        return booking

    @classmethod
    def apply_cascade(cls, booking: Booking, target: BookingStatus) -> Booking:
        """Move a root booking and carry its live segments along where legal"""
        cls.apply(booking, target)
        if isinstance(booking, CompositeParent):
            for segment in booking.segments:
                if cls.can_transition(segment.status, target):
                    segment.status = target
                    segment.touch()
        return booking
