"""Domain Entities - Aggregates"""
from pydantic import BaseModel, Field, validator
from uuid import UUID, uuid4
from datetime import datetime, date, time
from typing import Optional, List, Tuple
from decimal import Decimal

from config.settings import settings
from domain.calendar import are_segments_sequential, calculate_units, expected_next_check_in
from domain.enums import (
    BookingStatus, BookingCalculationMode, PaymentStatus, PaymentType, PaymentMethod
)
from domain.exceptions import InvalidStateError, ValidationError
from domain.value_objects import (
    BookingServiceLine, discount_breakdown, round_money
)

# Well-known identity of the only BookingSettings record
SETTINGS_SINGLETON_ID = UUID("00000000-0000-0000-0000-000000000001")

ZERO = Decimal("0.00")


class RoomType(BaseModel):
    """Room category with its tariff"""

    room_type_id: UUID = Field(default_factory=uuid4)
    name: str
    description: Optional[str] = None
    max_capacity: int = Field(ge=1)
    price_per_unit: Decimal = Field(ge=0)
    price_per_additional_pet: Decimal = Field(ge=0, default=Decimal("0"))
    is_active: bool = True

    class Config:
        from_attributes = True

    def price_for(self, units: int, number_of_pets: int) -> Tuple[Decimal, Decimal]:
        """Return (base_price, additional_pets_price) for a stay"""
        base_price = round_money(self.price_per_unit * units)
        additional_pets = max(0, number_of_pets - 1)
        additional_price = round_money(self.price_per_additional_pet * additional_pets * units)
        return base_price, additional_price


class Room(BaseModel):
    """Physical room belonging to one room type"""

    room_id: UUID = Field(default_factory=uuid4)
    room_number: str
    room_type_id: UUID
    floor: Optional[int] = None
    special_notes: Optional[str] = None
    is_active: bool = True

    class Config:
        from_attributes = True


class BookingSettings(BaseModel):
    """Facility-wide booking configuration; exactly one record exists"""

    settings_id: UUID = SETTINGS_SINGLETON_ID
    calculation_mode: BookingCalculationMode = BookingCalculationMode.DAYS
    check_in_time: time = time(15, 0)
    check_out_time: time = time(12, 0)
    is_singleton: bool = True

    class Config:
        from_attributes = True


class Payment(BaseModel):
    """Payment Entity, owned by exactly one booking (plain, parent or segment)"""

    payment_id: UUID = Field(default_factory=uuid4)
    booking_id: UUID
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CARD
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_type: PaymentType = PaymentType.FULL_PAYMENT
    prepayment_percentage: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    payment_proof: Optional[str] = None
    admin_comment: Optional[str] = None
    paid_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by_admin_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True

    @property
    def counts_towards_paid(self) -> bool:
        """Completed payments and (negative) refund records make up the paid total"""
        return self.payment_status in (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)

    def confirm(self, admin_id: Optional[UUID]) -> None:
        """Pending -> Completed"""
        self._ensure_pending()
        self.payment_status = PaymentStatus.COMPLETED
        self.confirmed_at = datetime.utcnow()
        self.confirmed_by_admin_id = admin_id

    def reject(self, admin_id: Optional[UUID], comment: Optional[str] = None) -> None:
        """Pending -> Failed"""
        self._ensure_pending()
        self.payment_status = PaymentStatus.FAILED
        self.confirmed_at = datetime.utcnow()
        self.confirmed_by_admin_id = admin_id
        if comment:
            self.admin_comment = comment

    def _ensure_pending(self) -> None:
        if self.payment_status != PaymentStatus.PENDING:
            raise InvalidStateError(
                f"Payment has already been processed (status {self.payment_status.value})"
            )

    @staticmethod
    def refund_record(
        booking_id: UUID,
        amount: Decimal,
        comment: str,
        admin_id: Optional[UUID] = None
    ) -> "Payment":
        """Negative Refunded record that reduces the booking's paid total"""
        now = datetime.utcnow()
        return Payment(
            booking_id=booking_id,
            amount=-round_money(amount),
            payment_status=PaymentStatus.REFUNDED,
            payment_type=PaymentType.FULL_PAYMENT,
            admin_comment=comment,
            paid_at=now,
            confirmed_at=now,
            confirmed_by_admin_id=admin_id
        )


class Booking(BaseModel):
    """Booking Aggregate Root Entity (common part of every variant)"""

    # Identity
    booking_id: UUID = Field(default_factory=uuid4)

    # References
    client_id: UUID
    room_type_id: UUID
    assigned_room_id: Optional[UUID] = None
    pet_ids: List[UUID] = []

    # Stay
    check_in_date: date
    check_out_date: date
    number_of_pets: int = Field(ge=1)
    status: BookingStatus = BookingStatus.PENDING
    special_requests: Optional[str] = None

    # Pricing
    base_price: Decimal = ZERO
    additional_pets_price: Decimal = ZERO
    services_price: Decimal = ZERO
    services: List[BookingServiceLine] = []
    discount_percent: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total_price: Decimal = ZERO

    # Administrative payment gates
    payment_approved: bool = False
    prepayment_cancelled: bool = False
    required_prepayment_amount: Decimal = ZERO

    # Early checkout
    is_early_checkout: bool = False
    original_check_out_date: Optional[date] = None

    # Leftover balance kept as revenue
    overpayment_converted_to_revenue: bool = False
    revenue_conversion_amount: Optional[Decimal] = None
    revenue_conversion_comment: Optional[str] = None

    payments: List[Payment] = []

    # Metadata
    created_at: datetime = Field(default_factory=datetime.utcnow)
    modified_at: datetime = Field(default_factory=datetime.utcnow)
    version: int = 1

    class Config:
        from_attributes = True

    # ==================== VARIANT FLAGS ====================
    @property
    def is_composite(self) -> bool:
        return False

    @property
    def is_segment(self) -> bool:
        return False

    @property
    def occupies_capacity(self) -> bool:
        """Whether the booking takes a room out of the pool for its dates"""
        return True

    # ==================== QUERY METHODS ====================
    def units(self, mode: BookingCalculationMode) -> int:
        return calculate_units(self.check_in_date, self.check_out_date, mode)

    def payment_owners(self) -> List["Booking"]:
        """Bookings whose payments belong to this aggregate"""
        return [self]

    def all_payments(self) -> List[Payment]:
        """Fold of the payments recorded against every owner"""
        return [payment for owner in self.payment_owners() for payment in owner.payments]

    @property
    def paid_amount(self) -> Decimal:
        return sum(
            (p.amount for p in self.all_payments() if p.counts_towards_paid),
            ZERO
        )

    @property
    def remaining_amount(self) -> Decimal:
        """Negative when the client has overpaid"""
        return self.total_price - self.paid_amount

    @property
    def credit_balance(self) -> Decimal:
        """Money held beyond what the booking owes"""
        if self.status == BookingStatus.CANCELLED:
            return max(ZERO, self.paid_amount)
        return max(ZERO, -self.remaining_amount)

    def completed_amount(self, payment_type: Optional[PaymentType] = None) -> Decimal:
        return sum(
            (
                p.amount for p in self.all_payments()
                if p.payment_status == PaymentStatus.COMPLETED
                and (payment_type is None or p.payment_type == payment_type)
            ),
            ZERO
        )

    def has_pending_payments(self) -> bool:
        return any(p.payment_status == PaymentStatus.PENDING for p in self.all_payments())

    def find_payment(self, payment_id: UUID) -> Optional[Payment]:
        for payment in self.all_payments():
            if payment.payment_id == payment_id:
                return payment
        return None

    # ==================== MODIFICATION METHODS ====================
    def add_payment(self, payment: Payment) -> Payment:
        if payment.booking_id != self.booking_id:
            raise ValidationError("Payment belongs to a different booking")
        self.payments.append(payment)
        self.touch()
        return payment

    def add_service(self, line: BookingServiceLine) -> BookingServiceLine:
        self.services.append(line)
        self.services_price = round_money(self.services_price + line.total)
        self.recalculate_total()
        self.touch()
        return line

    def apply_pricing(
        self,
        base_price: Decimal,
        additional_pets_price: Decimal,
        discount_percent: Decimal
    ) -> None:
        self.base_price = base_price
        self.additional_pets_price = additional_pets_price
        self.discount_percent = discount_percent
        self.recalculate_total()

    def recalculate_total(self) -> None:
        """total = base + additional + services - discount"""
        subtotal = self.base_price + self.additional_pets_price + self.services_price
        if self.discount_percent > 0:
            total, discount_amount, applied = discount_breakdown(subtotal, self.discount_percent)
            self.discount_amount = discount_amount
            self.discount_percent = applied
        else:
            total = round_money(max(ZERO, subtotal - self.discount_amount))
        self.total_price = total

    def default_prepayment(self) -> Decimal:
        return round_money(self.total_price * settings.PREPAYMENT_RATIO)

    def mark_early_checkout(self, actual_check_out: date) -> None:
        self.original_check_out_date = self.check_out_date
        self.is_early_checkout = True
        self.check_out_date = actual_check_out

    def touch(self) -> None:
        self.modified_at = datetime.utcnow()


class PlainBooking(Booking):
    """Single-room booking, not part of a composite"""
    pass


class CompositeChild(Booking):
    """One segment of a composite booking; occupies its own room type and dates"""

    parent_booking_id: UUID
    segment_order: int = Field(ge=1)

    @property
    def is_segment(self) -> bool:
        return True


class CompositeParent(Booking):
    """Composite booking spanning consecutive segments; never holds a room itself"""

    segments: List[CompositeChild] = []

    @validator('assigned_room_id')
    def parent_has_no_room(cls, v):
        if v is not None:
            raise ValueError('Composite booking cannot be assigned a room')
        return v

    @property
    def is_composite(self) -> bool:
        return True

    @property
    def occupies_capacity(self) -> bool:
        return False

    def payment_owners(self) -> List[Booking]:
        return [self, *self.ordered_segments()]

    def ordered_segments(self) -> List[CompositeChild]:
        return sorted(self.segments, key=lambda s: s.segment_order)

    def segment(self, booking_id: UUID) -> Optional[CompositeChild]:
        for child in self.segments:
            if child.booking_id == booking_id:
                return child
        return None

    def add_payment(self, payment: Payment) -> Payment:
        child = self.segment(payment.booking_id)
        if child is None:
            return super().add_payment(payment)
        child.add_payment(payment)
        self.touch()
        return payment

    def find_owner(self, booking_id: UUID) -> Optional[Booking]:
        if booking_id == self.booking_id:
            return self
        return self.segment(booking_id)

    def validate_segments(self, mode: BookingCalculationMode) -> None:
        """Segments must be numbered 1..n, owned by this parent and date-sequential"""
        ordered = self.ordered_segments()
        if not ordered:
            raise ValidationError("Composite booking has no segments")
        for index, child in enumerate(ordered):
            if child.parent_booking_id != self.booking_id:
                raise ValidationError(f"Segment {child.booking_id} references another parent")
            if child.segment_order != index + 1:
                raise ValidationError("Segment order must be contiguous starting at 1")
            if index == 0:
                continue
            previous = ordered[index - 1]
            if not are_segments_sequential(previous.check_out_date, child.check_in_date, mode):
                expected = expected_next_check_in(previous.check_out_date, mode)
                raise ValidationError(
                    f"Segment {index + 1} must follow segment {index} without a gap "
                    f"(expected {expected:%d.%m.%Y}, got {child.check_in_date:%d.%m.%Y})"
                )

    def refresh_from_segments(self) -> None:
        """Re-derive dates and prices of the parent from its segments"""
        ordered = self.ordered_segments()
        self.check_in_date = ordered[0].check_in_date
        self.check_out_date = ordered[-1].check_out_date
        self.base_price = round_money(
            sum((s.base_price + s.additional_pets_price for s in ordered), ZERO)
        )
        self.additional_pets_price = ZERO
        self.services_price = round_money(sum((s.services_price for s in ordered), ZERO))
        self.recalculate_total()
