"""Application Services - Payment and reconciliation use cases"""
import logging
import time
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from application.services import BookingSettingsService
from config.settings import settings
from domain.entities import Booking, CompositeParent, Payment
from domain.enums import BookingStatus, PaymentMethod, PaymentStatus, PaymentType
from domain.exceptions import InvalidStateError, NotFoundError, ValidationError
from domain.reconciliation import (
    calculate_early_checkout, next_status_after_payment, refundable_amount, resolve_amount
)
from domain.repositories import BookingRepository, PaymentRepository, UnitOfWork
from domain.state_machine import BookingStateMachine, PAYABLE_STATUSES
from domain.value_objects import EarlyCheckoutCalculation, HUNDRED, round_money

logger = logging.getLogger("pet_hotel.payments")


class PaymentService:
    """Service for payments, refunds and settlement of overpayments"""

    def __init__(self,
                 booking_repository: BookingRepository,
                 payment_repository: PaymentRepository,
                 settings_service: BookingSettingsService,
                 uow: UnitOfWork):
        self.booking_repository = booking_repository
        self.payment_repository = payment_repository
        self.settings_service = settings_service
        self.uow = uow

    # ==================== LOADING HELPERS ====================
    async def _load(self, booking_id: UUID) -> Tuple[Booking, Booking]:
        """Return (root aggregate, booking the id refers to)"""
        root = await self.booking_repository.find_root(booking_id)
        if root is None:
            raise NotFoundError("Booking", booking_id)
        if isinstance(root, CompositeParent):
            return root, root.find_owner(booking_id)
        return root, root

    async def _load_settled_root(self, booking_id: UUID) -> Booking:
        root, booking = await self._load(booking_id)
        if booking is not root:
            raise ValidationError(
                f"Booking {booking_id} is a segment; settle composite booking {root.booking_id} instead"
            )
        return root

    async def _load_for_payment(self, payment_id: UUID) -> Tuple[Booking, Payment]:
        stored = await self.payment_repository.find_by_id(payment_id)
        if stored is None:
            raise NotFoundError("Payment", payment_id)
        root, _ = await self._load(stored.booking_id)
        return root, root.find_payment(payment_id)

    @staticmethod
    def _percentage_of(booking: Booking, amount: Decimal) -> Optional[Decimal]:
        if booking.total_price <= 0:
            return None
        return round_money(amount / booking.total_price * HUNDRED)

    @staticmethod
    def _advance(booking: Booking) -> None:
        new_status = next_status_after_payment(booking)
        if new_status != booking.status:
            BookingStateMachine.apply_cascade(booking, new_status)
            logger.info("Booking %s moved to %s", booking.booking_id, new_status.value)

    # ==================== PAYMENTS ====================
    async def create_payment(
        self,
        booking_id: UUID,
        client_id: UUID,
        amount: Decimal,
        payment_method: PaymentMethod,
        payment_type: PaymentType,
        payment_proof: Optional[str] = None
    ) -> Payment:
        """Client reports a payment; it waits for an administrator"""
        async with self.uow:
            root, owner = await self._load(booking_id)
            if root.client_id != client_id:
                raise ValidationError("Booking belongs to another client")
            if root.status.is_terminal:
                raise InvalidStateError(f"Cannot pay for a booking in status {root.status.value}")
            if not root.payment_approved:
                raise InvalidStateError("Payment for this booking has not been approved yet")
            if root.status not in PAYABLE_STATUSES:
                raise InvalidStateError(f"Cannot pay for a booking in status {root.status.value}")

            amount = round_money(amount)
            tolerance = settings.ROUNDING_TOLERANCE
            remaining = round_money(root.remaining_amount)
            if amount <= 0:
                raise ValidationError("Payment amount must be greater than zero")
            if amount > remaining + tolerance:
                raise ValidationError(f"Payment amount exceeds the remaining {remaining}")

            if payment_type == PaymentType.PREPAYMENT:
                if root.prepayment_cancelled:
                    raise InvalidStateError("Prepayment has been cancelled for this booking")
                if (root.completed_amount(PaymentType.PREPAYMENT) <= 0
                        and amount + tolerance < root.required_prepayment_amount):
                    raise ValidationError(
                        f"Prepayment must be at least {root.required_prepayment_amount}"
                    )
            elif abs(amount - remaining) > tolerance:
                raise ValidationError(f"Full payment must cover the remaining {remaining}")

            payment = Payment(
                booking_id=owner.booking_id,
                amount=amount,
                payment_method=payment_method,
                payment_type=payment_type,
                prepayment_percentage=self._percentage_of(root, amount),
                payment_proof=payment_proof,
                paid_at=datetime.utcnow()
            )
            root.add_payment(payment)
            if root.status == BookingStatus.AWAITING_PAYMENT:
                BookingStateMachine.apply_cascade(root, BookingStatus.PAYMENT_PENDING)
            await self.booking_repository.update(root)
            logger.info(
                "Payment %s of %s registered for booking %s, awaiting confirmation",
                payment.payment_id, amount, booking_id
            )
            return payment

    async def create_manual_payment(
        self,
        booking_id: UUID,
        amount: Decimal,
        payment_method: PaymentMethod,
        payment_type: PaymentType,
        admin_id: UUID,
        admin_comment: Optional[str] = None
    ) -> Payment:
        """Administrator records money received in person"""
        async with self.uow:
            root, owner = await self._load(booking_id)
            if root.status.is_terminal:
                raise InvalidStateError(f"Cannot pay for a booking in status {root.status.value}")
            amount = round_money(amount)
            if amount <= 0:
                raise ValidationError("Payment amount must be greater than zero")

            now = datetime.utcnow()
            payment = Payment(
                booking_id=owner.booking_id,
                amount=amount,
                payment_method=payment_method,
                payment_status=PaymentStatus.COMPLETED,
                payment_type=payment_type,
                prepayment_percentage=self._percentage_of(root, amount),
                transaction_id=f"MANUAL-{int(time.time() * 1000)}-ADMIN",
                admin_comment=admin_comment,
                paid_at=now,
                confirmed_at=now,
                confirmed_by_admin_id=admin_id
            )
            root.add_payment(payment)
            if root.status in (
                BookingStatus.PENDING, BookingStatus.WAITING_FOR_PAYMENT_APPROVAL,
                BookingStatus.AWAITING_PAYMENT, BookingStatus.PAYMENT_PENDING
            ):
                root.payment_approved = True
                BookingStateMachine.apply_cascade(root, BookingStatus.CONFIRMED)
            await self.booking_repository.update(root)
            logger.info(
                "Manual payment %s of %s recorded for booking %s by admin %s",
                payment.transaction_id, amount, booking_id, admin_id
            )
            return payment

    async def confirm_payment(self, payment_id: UUID, admin_id: Optional[UUID] = None) -> Payment:
        """Pending -> Completed, then re-evaluate the booking"""
        async with self.uow:
            root, payment = await self._load_for_payment(payment_id)
            payment.confirm(admin_id)
            root.touch()
            self._advance(root)
            await self.booking_repository.update(root)
            logger.info("Payment %s confirmed by admin %s", payment_id, admin_id)
            return payment

    async def reject_payment(
        self,
        payment_id: UUID,
        admin_id: Optional[UUID] = None,
        comment: Optional[str] = None
    ) -> Payment:
        """Pending -> Failed"""
        async with self.uow:
            root, payment = await self._load_for_payment(payment_id)
            payment.reject(admin_id, comment)
            root.touch()
            if root.status == BookingStatus.PAYMENT_PENDING and not root.has_pending_payments():
                BookingStateMachine.apply_cascade(root, BookingStatus.AWAITING_PAYMENT)
            await self.booking_repository.update(root)
            logger.info("Payment %s rejected by admin %s", payment_id, admin_id)
            return payment

    async def update_payment_comment(self, payment_id: UUID, comment: Optional[str]) -> Payment:
        """Edit the admin comment; the one change allowed on settled payments"""
        async with self.uow:
            root, payment = await self._load_for_payment(payment_id)
            payment.admin_comment = comment
            root.touch()
            await self.booking_repository.update(root)
            return payment

    # ==================== EARLY CHECKOUT ====================
    async def calculate_early_checkout(
        self,
        booking_id: UUID,
        actual_check_out: Optional[date] = None
    ) -> EarlyCheckoutCalculation:
        """Preview the settlement of leaving before the scheduled date"""
        root = await self._load_settled_root(booking_id)
        if root.status != BookingStatus.CHECKED_IN:
            raise InvalidStateError("Early checkout is only possible for checked-in bookings")
        mode = await self.settings_service.get_calculation_mode()
        return calculate_early_checkout(root, actual_check_out or date.today(), mode)

    # ==================== OVERPAYMENTS ====================
    async def process_refund(
        self,
        booking_id: UUID,
        custom_amount: Optional[Decimal] = None,
        admin_id: Optional[UUID] = None
    ) -> Payment:
        """Return the client's credit on a settled booking"""
        async with self.uow:
            root = await self._load_settled_root(booking_id)
            amount = resolve_amount(refundable_amount(root), custom_amount)
            if root.status == BookingStatus.CANCELLED:
                comment = f"Refund for cancelled booking: {amount} {settings.CURRENCY_SYMBOL}"
            else:
                comment = f"Refund of overpayment: {amount} {settings.CURRENCY_SYMBOL}"
            refund = root.add_payment(Payment.refund_record(root.booking_id, amount, comment, admin_id))
            await self.booking_repository.update(root)
            logger.info("Refund of %s recorded for booking %s", amount, booking_id)
            return refund

    async def transfer_payment(
        self,
        source_booking_id: UUID,
        target_booking_id: UUID,
        custom_amount: Optional[Decimal] = None,
        admin_id: Optional[UUID] = None
    ) -> Payment:
        """Move credit from a settled booking to another booking of the same client"""
        async with self.uow:
            source = await self._load_settled_root(source_booking_id)
            target_root, target = await self._load(target_booking_id)
            if target_root.booking_id == source.booking_id:
                raise ValidationError("Cannot transfer a payment to the same booking")
            if source.client_id != target_root.client_id:
                raise ValidationError("Payments can only be transferred between bookings of the same client")
            available = refundable_amount(source)
            if target_root.status.is_terminal:
                raise InvalidStateError(
                    f"Cannot transfer to a booking in status {target_root.status.value}"
                )
            amount = resolve_amount(available, custom_amount)

            symbol = settings.CURRENCY_SYMBOL
            source.add_payment(Payment.refund_record(
                source.booking_id, amount,
                f"Transferred {amount} {symbol} to booking {target_booking_id}", admin_id
            ))
            now = datetime.utcnow()
            credit = Payment(
                booking_id=target.booking_id,
                amount=amount,
                payment_status=PaymentStatus.COMPLETED,
                payment_type=PaymentType.FULL_PAYMENT,
                transaction_id=f"TRANSFER-{source.booking_id}",
                admin_comment=f"Transferred {amount} {symbol} from booking {source.booking_id}",
                paid_at=now,
                confirmed_at=now,
                confirmed_by_admin_id=admin_id
            )
            target_root.add_payment(credit)
            self._advance(target_root)

            await self.booking_repository.update(source)
            await self.booking_repository.update(target_root)
            logger.info(
                "Transferred %s from booking %s to booking %s",
                amount, source.booking_id, target_booking_id
            )
            return credit

    async def convert_overpayment_to_revenue(
        self,
        booking_id: UUID,
        comment: Optional[str] = None
    ) -> Booking:
        """Keep the client's leftover credit as hotel revenue"""
        async with self.uow:
            root = await self._load_settled_root(booking_id)
            amount = refundable_amount(root)
            root.overpayment_converted_to_revenue = True
            root.revenue_conversion_amount = amount
            root.revenue_conversion_comment = comment or (
                f"Overpayment of {amount} {settings.CURRENCY_SYMBOL} converted to revenue"
            )
            root.touch()
            updated = await self.booking_repository.update(root)
            logger.info("Overpayment of %s on booking %s converted to revenue", amount, booking_id)
            return updated

    # ==================== QUERIES ====================
    async def get_booking_payments(self, booking_id: UUID) -> List[Payment]:
        """Get payments of a booking including its segments"""
        if await self.booking_repository.find_by_id(booking_id) is None:
            raise NotFoundError("Booking", booking_id)
        return await self.payment_repository.find_by_booking_id(booking_id)

    async def get_pending_payments(self) -> List[Payment]:
        """Get payments waiting for an administrator"""
        return await self.payment_repository.find_pending()
