"""Application Services - Booking use cases"""
import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional, Union
from uuid import UUID, uuid4

from config.settings import settings
from domain.calendar import (
    are_segments_sequential, calculate_units, do_periods_overlap,
    expected_next_check_in, format_units, get_minimum_period
)
from domain.entities import (
    Booking, BookingSettings, CompositeChild, CompositeParent, PlainBooking, Room, RoomType
)
from domain.enums import BookingCalculationMode, BookingStatus, PaymentType
from domain.exceptions import (
    InvalidStateError, NotFoundError, RoomUnavailableError, ValidationError
)
from domain.reconciliation import (
    calculate_early_checkout, next_status_after_payment, settle_segments
)
from domain.repositories import (
    BookingRepository, BookingSettingsRepository, RoomRepository, RoomTypeRepository, UnitOfWork
)
from domain.state_machine import BookingStateMachine, PAYABLE_STATUSES, SETTLED_STATUSES
from domain.value_objects import (
    BookingServiceLine, SegmentRequest, normalize_discount, round_money
)

logger = logging.getLogger("pet_hotel.bookings")

TimeInput = Union[time, str]


class BookingSettingsService:
    """Accessor for the BookingSettings singleton"""

    def __init__(
        self,
        repository: BookingSettingsRepository,
        booking_repository: BookingRepository,
        uow: UnitOfWork
    ):
        self.repository = repository
        self.booking_repository = booking_repository
        self.uow = uow

    async def get_settings(self) -> BookingSettings:
        """Return the settings, creating the default record on first use"""
        current = await self.repository.get_singleton()
        if current is None:
            current = await self.repository.save(BookingSettings())
            logger.info("Created default booking settings (%s mode)", current.calculation_mode.value)
        return current

    async def get_calculation_mode(self) -> BookingCalculationMode:
        return (await self.get_settings()).calculation_mode

    async def can_change_settings(self) -> bool:
        """Settings are frozen while any booking is in progress"""
        return not await self.booking_repository.has_active_bookings()

    async def update_settings(
        self,
        calculation_mode: Optional[BookingCalculationMode] = None,
        check_in_time: Optional[TimeInput] = None,
        check_out_time: Optional[TimeInput] = None
    ) -> BookingSettings:
        """Change the facility-wide booking configuration"""
        async with self.uow:
            if not await self.can_change_settings():
                raise InvalidStateError(
                    "Booking settings cannot be changed while there are active bookings"
                )
            current = await self.get_settings()
            if calculation_mode is not None:
                current.calculation_mode = BookingCalculationMode(calculation_mode)
            if check_in_time is not None:
                current.check_in_time = self._parse_time(check_in_time)
            if check_out_time is not None:
                current.check_out_time = self._parse_time(check_out_time)
            saved = await self.repository.save(current)
            logger.info(
                "Booking settings updated: mode=%s check-in=%s check-out=%s",
                saved.calculation_mode.value, saved.check_in_time, saved.check_out_time
            )
            return saved

    @staticmethod
    def _parse_time(value: TimeInput) -> time:
        if isinstance(value, time):
            return value
        for fmt in ("%H:%M", "%H:%M:%S"):
            try:
                return datetime.strptime(value, fmt).time()
            except ValueError:
                continue
        raise ValidationError(f"Invalid time '{value}', expected HH:MM or HH:MM:SS")


class AvailabilityService:
    """Room counting under the configured calculation mode"""

    def __init__(
        self,
        booking_repository: BookingRepository,
        room_repository: RoomRepository,
        settings_service: BookingSettingsService
    ):
        self.booking_repository = booking_repository
        self.room_repository = room_repository
        self.settings_service = settings_service

    @staticmethod
    def _blocks(booking: Booking, check_in: date, check_out: date,
                mode: BookingCalculationMode, exclude_booking_id: Optional[UUID]) -> bool:
        if booking.booking_id == exclude_booking_id:
            return False
        if booking.status == BookingStatus.CANCELLED or not booking.occupies_capacity:
            return False
        return do_periods_overlap(
            booking.check_in_date, booking.check_out_date, check_in, check_out, mode
        )

    async def available_room_count(
        self,
        room_type_id: UUID,
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[UUID] = None
    ) -> int:
        """Active rooms of the type minus overlapping capacity-holding bookings"""
        mode = await self.settings_service.get_calculation_mode()
        total_rooms = await self.room_repository.count_active_by_room_type(room_type_id)
        bookings = await self.booking_repository.find_for_room_type(room_type_id)
        occupied = sum(
            1 for b in bookings
            if self._blocks(b, check_in, check_out, mode, exclude_booking_id)
        )
        available = total_rooms - occupied
        if available < 0:
            logger.warning(
                "Room type %s is overbooked for %s - %s: %s rooms, %s bookings",
                room_type_id, check_in, check_out, total_rooms, occupied
            )
            return 0
        return available

    async def is_room_available(
        self,
        room_id: UUID,
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[UUID] = None
    ) -> bool:
        """Whether no live booking holds the room on overlapping dates"""
        mode = await self.settings_service.get_calculation_mode()
        bookings = await self.booking_repository.find_for_room(room_id)
        return not any(
            self._blocks(b, check_in, check_out, mode, exclude_booking_id) for b in bookings
        )

    async def find_free_room(
        self,
        room_type_id: UUID,
        check_in: date,
        check_out: date,
        exclude_booking_id: Optional[UUID] = None
    ) -> Optional[Room]:
        """First active room of the type that is free for the dates"""
        for room in await self.room_repository.find_active_by_room_type(room_type_id):
            if await self.is_room_available(room.room_id, check_in, check_out, exclude_booking_id):
                return room
        return None

    async def ensure_room_assignable(self, room_id: UUID, room_type_id: UUID) -> Room:
        room = await self.room_repository.find_by_id(room_id)
        if room is None:
            raise NotFoundError("Room", room_id)
        if not room.is_active:
            raise ValidationError(f"Room {room.room_number} is not active")
        if room.room_type_id != room_type_id:
            raise ValidationError(f"Room {room.room_number} does not belong to the booked room type")
        return room


class BookingService:
    """Service for Booking business use cases"""

    def __init__(self,
                 repository: BookingRepository,
                 room_type_repository: RoomTypeRepository,
                 availability_service: AvailabilityService,
                 settings_service: BookingSettingsService,
                 uow: UnitOfWork):
        self.repository = repository
        self.room_type_repository = room_type_repository
        self.availability = availability_service
        self.settings_service = settings_service
        self.uow = uow

    # ==================== LOADING HELPERS ====================
    async def _get_root(self, booking_id: UUID) -> Booking:
        root = await self.repository.find_root(booking_id)
        if root is None:
            raise NotFoundError("Booking", booking_id)
        return root

    async def _get_managed_root(self, booking_id: UUID) -> Booking:
        """Root booking; lifecycle of a segment is driven through its parent"""
        root = await self._get_root(booking_id)
        if root.booking_id != booking_id:
            raise InvalidStateError(
                f"Booking {booking_id} is a segment of composite booking {root.booking_id}; "
                f"manage the composite booking instead"
            )
        return root

    async def _get_room_type(self, room_type_id: UUID) -> RoomType:
        room_type = await self.room_type_repository.find_by_id(room_type_id)
        if room_type is None:
            raise NotFoundError("Room type", room_type_id)
        if not room_type.is_active:
            raise ValidationError(f"Room type '{room_type.name}' is not available for booking")
        return room_type

    @staticmethod
    def _validate_stay(check_in: date, check_out: date, mode: BookingCalculationMode,
                       allow_past: bool = False) -> None:
        if check_out <= check_in:
            raise ValidationError("Check-out date must be after check-in date")
        if not allow_past and check_in < date.today():
            raise ValidationError("Check-in date cannot be in the past")
        units = calculate_units(check_in, check_out, mode)
        minimum = get_minimum_period(mode)
        if units < minimum:
            raise ValidationError(
                f"Minimum stay is {format_units(mode, minimum)}, requested {format_units(mode, units)}"
            )

    async def _price(self, booking: Booking, room_type: RoomType, mode: BookingCalculationMode) -> None:
        base_price, additional_price = room_type.price_for(booking.units(mode), booking.number_of_pets)
        booking.apply_pricing(base_price, additional_price, booking.discount_percent)

    # ==================== CREATION ====================
    async def create_booking(
        self,
        client_id: UUID,
        pet_ids: List[UUID],
        room_type_id: Optional[UUID] = None,
        check_in: Optional[date] = None,
        check_out: Optional[date] = None,
        segments: Optional[List[SegmentRequest]] = None,
        special_requests: Optional[str] = None,
        discount_percent: Decimal = Decimal("0"),
        assigned_room_id: Optional[UUID] = None
    ) -> Booking:
        """Create a plain or composite booking in Pending status"""
        async with self.uow:
            return await self._create(
                client_id, pet_ids, room_type_id, check_in, check_out,
                segments, special_requests, discount_percent, assigned_room_id
            )

    async def create_manual_booking(
        self,
        client_id: UUID,
        pet_ids: List[UUID],
        room_type_id: Optional[UUID] = None,
        check_in: Optional[date] = None,
        check_out: Optional[date] = None,
        segments: Optional[List[SegmentRequest]] = None,
        special_requests: Optional[str] = None,
        discount_percent: Decimal = Decimal("0"),
        assigned_room_id: Optional[UUID] = None,
        required_prepayment_amount: Optional[Decimal] = None
    ) -> Booking:
        """Admin-created booking; payment is approved straight away"""
        async with self.uow:
            booking = await self._create(
                client_id, pet_ids, room_type_id, check_in, check_out,
                segments, special_requests, discount_percent, assigned_room_id,
                persist=False
            )
            self._grant_approval(booking, required_prepayment_amount)
            saved = await self._store_new(booking)
            logger.info(
                "Payment approved for booking %s, required prepayment %s",
                saved.booking_id, saved.required_prepayment_amount
            )
            return saved

    async def _create(
        self,
        client_id: UUID,
        pet_ids: List[UUID],
        room_type_id: Optional[UUID],
        check_in: Optional[date],
        check_out: Optional[date],
        segments: Optional[List[SegmentRequest]],
        special_requests: Optional[str],
        discount_percent: Decimal,
        assigned_room_id: Optional[UUID],
        persist: bool = True
    ) -> Booking:
        pets = list(dict.fromkeys(pet_ids or []))
        if not pets:
            raise ValidationError("At least one pet is required")

        if segments is None:
            if room_type_id is None or check_in is None or check_out is None:
                raise ValidationError("Room type, check-in and check-out dates are required")
            segments = [SegmentRequest(
                room_type_id=room_type_id,
                check_in=check_in,
                check_out=check_out,
                assigned_room_id=assigned_room_id
            )]
        if not segments:
            raise ValidationError("At least one segment is required")

        mode = await self.settings_service.get_calculation_mode()
        discount = normalize_discount(discount_percent)
        room_types = []

        for index, segment in enumerate(segments):
            self._validate_stay(segment.check_in, segment.check_out, mode)
            room_type = await self._get_room_type(segment.room_type_id)
            if len(pets) > room_type.max_capacity:
                raise ValidationError(
                    f"Room type '{room_type.name}' holds at most {room_type.max_capacity} pets"
                )
            if index > 0:
                previous = segments[index - 1]
                if not are_segments_sequential(previous.check_out, segment.check_in, mode):
                    expected = expected_next_check_in(previous.check_out, mode)
                    raise ValidationError(
                        f"Segment {index + 1} must start on {expected:%d.%m.%Y}, "
                        f"got {segment.check_in:%d.%m.%Y}"
                    )
            available = await self.availability.available_room_count(
                segment.room_type_id, segment.check_in, segment.check_out
            )
            if available <= 0:
                raise RoomUnavailableError(
                    f"No '{room_type.name}' rooms available for "
                    f"{segment.check_in:%d.%m.%Y} - {segment.check_out:%d.%m.%Y}"
                )
            if segment.assigned_room_id is not None:
                room = await self.availability.ensure_room_assignable(
                    segment.assigned_room_id, segment.room_type_id
                )
                if not await self.availability.is_room_available(
                    room.room_id, segment.check_in, segment.check_out
                ):
                    raise RoomUnavailableError(f"Room {room.room_number} is occupied for these dates")
            room_types.append(room_type)

        common = dict(
            client_id=client_id,
            pet_ids=pets,
            number_of_pets=len(pets),
            special_requests=special_requests,
            discount_percent=discount
        )

        if len(segments) == 1:
            segment = segments[0]
            booking = PlainBooking(
                room_type_id=segment.room_type_id,
                assigned_room_id=segment.assigned_room_id,
                check_in_date=segment.check_in,
                check_out_date=segment.check_out,
                **common
            )
            await self._price(booking, room_types[0], mode)
        else:
            parent_id = uuid4()
            children = []
            for order, (segment, room_type) in enumerate(zip(segments, room_types), start=1):
                child = CompositeChild(
                    parent_booking_id=parent_id,
                    segment_order=order,
                    room_type_id=segment.room_type_id,
                    assigned_room_id=segment.assigned_room_id,
                    check_in_date=segment.check_in,
                    check_out_date=segment.check_out,
                    **common
                )
                await self._price(child, room_type, mode)
                children.append(child)
            booking = CompositeParent(
                booking_id=parent_id,
                room_type_id=segments[0].room_type_id,
                check_in_date=segments[0].check_in,
                check_out_date=segments[-1].check_out,
                segments=children,
                **common
            )
            booking.validate_segments(mode)
            booking.refresh_from_segments()

        if not persist:
            return booking
        return await self._store_new(booking)

    async def _store_new(self, booking: Booking) -> Booking:
        segment_count = len(booking.segments) if isinstance(booking, CompositeParent) else 1
        saved = await self.repository.save(booking)
        logger.info(
            "Booking %s created for client %s: %s - %s, %s segment(s), total %s",
            saved.booking_id, saved.client_id, saved.check_in_date, saved.check_out_date,
            segment_count, saved.total_price
        )
        return saved

    # ==================== PAYMENT GATES ====================
    async def submit_for_payment_approval(self, booking_id: UUID) -> Booking:
        """Pending -> WaitingForPaymentApproval"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            BookingStateMachine.apply_cascade(booking, BookingStatus.WAITING_FOR_PAYMENT_APPROVAL)
            return await self.repository.update(booking)

    async def approve_payment(
        self,
        booking_id: UUID,
        required_prepayment_amount: Optional[Decimal] = None
    ) -> Booking:
        """Open the booking for payments"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            return await self._approve(booking, required_prepayment_amount)

    @staticmethod
    def _grant_approval(booking: Booking, required_prepayment_amount: Optional[Decimal]) -> None:
        """Validate and apply payment approval in memory"""
        if required_prepayment_amount is None:
            required = booking.default_prepayment()
        else:
            required = round_money(required_prepayment_amount)
            if required < 0 or required > booking.total_price:
                raise ValidationError(
                    f"Required prepayment must be between 0 and {booking.total_price}"
                )
        BookingStateMachine.apply_cascade(booking, BookingStatus.AWAITING_PAYMENT)
        booking.payment_approved = True
        booking.required_prepayment_amount = required
        new_status = next_status_after_payment(booking)
        if new_status != booking.status:
            BookingStateMachine.apply_cascade(booking, new_status)

    async def _approve(self, booking: Booking, required_prepayment_amount: Optional[Decimal]) -> Booking:
        self._grant_approval(booking, required_prepayment_amount)
        updated = await self.repository.update(booking)
        logger.info(
            "Payment approved for booking %s, required prepayment %s",
            updated.booking_id, updated.required_prepayment_amount
        )
        return updated

    async def update_prepayment_amount(self, booking_id: UUID, amount: Decimal) -> Booking:
        """Change the required prepayment before anything is paid"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            if booking.status != BookingStatus.AWAITING_PAYMENT:
                raise InvalidStateError("Prepayment can only be changed while awaiting payment")
            if booking.prepayment_cancelled:
                raise InvalidStateError("Prepayment has been cancelled for this booking")
            if booking.paid_amount > 0:
                raise InvalidStateError("Prepayment cannot be changed after payments were received")
            amount = round_money(amount)
            minimum = booking.default_prepayment()
            if amount < minimum or amount > booking.total_price:
                raise ValidationError(
                    f"Prepayment must be between {minimum} and {booking.total_price}"
                )
            booking.required_prepayment_amount = amount
            booking.touch()
            return await self.repository.update(booking)

    async def cancel_prepayment(self, booking_id: UUID) -> Booking:
        """Waive the prepayment requirement"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            if booking.status not in (BookingStatus.AWAITING_PAYMENT, BookingStatus.CONFIRMED):
                raise InvalidStateError(
                    f"Prepayment cannot be cancelled in status {booking.status.value}"
                )
            if booking.completed_amount(PaymentType.PREPAYMENT) > 0:
                raise InvalidStateError("Prepayment has already been paid")
            booking.prepayment_cancelled = True
            booking.required_prepayment_amount = Decimal("0.00")
            booking.touch()
            return await self.repository.update(booking)

    # ==================== LIFECYCLE ====================
    async def confirm(self, booking_id: UUID) -> Booking:
        """Confirm a booking and make sure each stay holds a free room"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            if booking.status.is_terminal or booking.status == BookingStatus.CHECKED_IN:
                raise InvalidStateError(
                    f"Cannot confirm booking in status {booking.status.value}"
                )
            BookingStateMachine.ensure_can_transition(booking, BookingStatus.CONFIRMED)

            if isinstance(booking, CompositeParent):
                stays = [s for s in booking.ordered_segments() if s.status != BookingStatus.CANCELLED]
            else:
                stays = [booking]
            for stay in stays:
                await self._secure_room(stay)

            BookingStateMachine.apply_cascade(booking, BookingStatus.CONFIRMED)
            updated = await self.repository.update(booking)
            logger.info("Booking %s confirmed", updated.booking_id)
            return updated

    async def _secure_room(self, stay: Booking) -> None:
        if stay.assigned_room_id is not None:
            try:
                room = await self.availability.ensure_room_assignable(
                    stay.assigned_room_id, stay.room_type_id
                )
            except (ValidationError, NotFoundError) as e:
                raise InvalidStateError(f"Cannot confirm booking: {e}") from e
            if not await self.availability.is_room_available(
                room.room_id, stay.check_in_date, stay.check_out_date, stay.booking_id
            ):
                raise InvalidStateError(
                    f"Cannot confirm booking: room {room.room_number} is occupied"
                )
            return
        room = await self.availability.find_free_room(
            stay.room_type_id, stay.check_in_date, stay.check_out_date, stay.booking_id
        )
        if room is None:
            raise InvalidStateError(
                f"Cannot confirm booking: no free room for "
                f"{stay.check_in_date:%d.%m.%Y} - {stay.check_out_date:%d.%m.%Y}"
            )
        stay.assigned_room_id = room.room_id
        logger.info("Room %s assigned to booking %s", room.room_number, stay.booking_id)

    async def check_in(self, booking_id: UUID) -> Booking:
        """Confirmed -> CheckedIn"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidStateError(
                    f"Only confirmed bookings can be checked in, current status is {booking.status.value}"
                )
            BookingStateMachine.apply_cascade(booking, BookingStatus.CHECKED_IN)
            updated = await self.repository.update(booking)
            logger.info("Booking %s checked in", updated.booking_id)
            return updated

    async def check_out(self, booking_id: UUID, actual_date: Optional[date] = None) -> Booking:
        """CheckedIn -> CheckedOut, settling the stay first when it ends early"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            BookingStateMachine.ensure_can_transition(booking, BookingStatus.CHECKED_OUT)

            if actual_date is not None and actual_date < booking.check_out_date:
                await self._settle_early(booking, actual_date)

            BookingStateMachine.apply_cascade(booking, BookingStatus.CHECKED_OUT)
            updated = await self.repository.update(booking)
            logger.info(
                "Booking %s checked out%s", updated.booking_id,
                " early" if updated.is_early_checkout else ""
            )
            return updated

    async def _settle_early(self, booking: Booking, actual_date: date) -> None:
        mode = await self.settings_service.get_calculation_mode()
        calculation = calculate_early_checkout(booking, actual_date, mode)
        if calculation.amount_due > settings.ROUNDING_TOLERANCE:
            raise InvalidStateError(
                f"Cannot check out early: client still owes {calculation.amount_due} "
                f"{settings.CURRENCY_SYMBOL} for the stayed period"
            )

        if isinstance(booking, CompositeParent):
            for part in settle_segments(booking, actual_date, mode):
                segment = part.segment
                if not part.started:
                    BookingStateMachine.apply(segment, BookingStatus.CANCELLED)
                    continue
                if actual_date < segment.check_out_date:
                    segment.mark_early_checkout(actual_date)
                    segment.total_price = part.amount_for_stayed
                BookingStateMachine.apply(segment, BookingStatus.CHECKED_OUT)

        booking.mark_early_checkout(actual_date)
        booking.total_price = calculation.amount_for_stayed_nights
        logger.info(
            "Early checkout for booking %s: stayed %s of %s, refund %s",
            booking.booking_id, calculation.nights_stayed, calculation.total_nights,
            calculation.refund_amount
        )

    async def cancel(self, booking_id: UUID) -> Booking:
        """Cancel a booking and its segments; payments stay as they are"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            BookingStateMachine.apply_cascade(booking, BookingStatus.CANCELLED)
            updated = await self.repository.update(booking)
            logger.info("Booking %s cancelled", updated.booking_id)
            return updated

    async def delete(self, booking_id: UUID) -> bool:
        """Hard delete with segments, pets, services and payments"""
        async with self.uow:
            booking = await self._get_managed_root(booking_id)
            deleted = await self.repository.delete(booking.booking_id)
            logger.warning(
                "Booking %s deleted with %s payment(s)", booking_id, len(booking.all_payments())
            )
            return deleted

    # ==================== MODIFICATION ====================
    async def update_dates(self, booking_id: UUID, check_in: date, check_out: date) -> Booking:
        """Move a booking (or one segment) to new dates"""
        async with self.uow:
            return await self._modify(booking_id, check_in=check_in, check_out=check_out)

    async def assign_room(self, booking_id: UUID, room_id: UUID) -> Booking:
        """Put a booking (or one segment) into a specific room"""
        async with self.uow:
            return await self._modify(booking_id, room_id=room_id)

    async def update_room_and_dates(
        self,
        booking_id: UUID,
        room_id: UUID,
        check_in: date,
        check_out: date
    ) -> Booking:
        """Change room and dates in one step"""
        async with self.uow:
            return await self._modify(booking_id, room_id=room_id, check_in=check_in, check_out=check_out)

    async def _modify(
        self,
        booking_id: UUID,
        room_id: Optional[UUID] = None,
        check_in: Optional[date] = None,
        check_out: Optional[date] = None
    ) -> Booking:
        root = await self._get_root(booking_id)
        target = root.find_owner(booking_id) if isinstance(root, CompositeParent) else root
        if isinstance(target, CompositeParent):
            raise InvalidStateError(
                "Composite booking dates and rooms follow its segments; modify a segment instead"
            )
        if target.status.is_terminal:
            raise InvalidStateError(f"Cannot modify booking in status {target.status.value}")

        mode = await self.settings_service.get_calculation_mode()
        new_check_in = check_in or target.check_in_date
        new_check_out = check_out or target.check_out_date
        dates_changed = (new_check_in, new_check_out) != (target.check_in_date, target.check_out_date)
        new_room_id = room_id or target.assigned_room_id

        if dates_changed:
            self._validate_stay(
                new_check_in, new_check_out, mode,
                allow_past=new_check_in == target.check_in_date
            )
            available = await self.availability.available_room_count(
                target.room_type_id, new_check_in, new_check_out, target.booking_id
            )
            if available <= 0:
                raise RoomUnavailableError(
                    f"No rooms of this type available for "
                    f"{new_check_in:%d.%m.%Y} - {new_check_out:%d.%m.%Y}"
                )
        if room_id is not None:
            await self.availability.ensure_room_assignable(room_id, target.room_type_id)
        if new_room_id is not None and not await self.availability.is_room_available(
            new_room_id, new_check_in, new_check_out, target.booking_id
        ):
            raise RoomUnavailableError("Room is occupied for the requested dates")

        target.assigned_room_id = new_room_id
        if dates_changed:
            target.check_in_date = new_check_in
            target.check_out_date = new_check_out
            room_type = await self.room_type_repository.find_by_id(target.room_type_id)
            if room_type is None:
                raise NotFoundError("Room type", target.room_type_id)
            await self._price(target, room_type, mode)
        target.touch()

        if isinstance(root, CompositeParent):
            root.validate_segments(mode)
            root.refresh_from_segments()
            root.touch()

        updated = await self.repository.update(root)
        logger.info(
            "Booking %s updated: %s - %s, room %s",
            booking_id, new_check_in, new_check_out, new_room_id
        )
        return updated

    async def merge_bookings(
        self,
        booking_ids: List[UUID],
        discount_percent: Optional[Decimal] = None
    ) -> CompositeParent:
        """Combine consecutive bookings of one client into a composite booking"""
        async with self.uow:
            ids = list(dict.fromkeys(booking_ids))
            if len(ids) < 2:
                raise ValidationError("At least two bookings are required to merge")

            bookings = []
            for booking_id in ids:
                root = await self._get_root(booking_id)
                if root.booking_id != booking_id:
                    raise ValidationError(f"Booking {booking_id} is already part of a composite booking")
                if root.is_composite:
                    raise ValidationError(f"Booking {booking_id} is already a composite booking")
                if root.status.is_terminal:
                    raise InvalidStateError(
                        f"Booking {booking_id} is {root.status.value} and cannot be merged"
                    )
                bookings.append(root)

            if len({b.client_id for b in bookings}) > 1:
                raise ValidationError("Only bookings of the same client can be merged")

            mode = await self.settings_service.get_calculation_mode()
            bookings.sort(key=lambda b: b.check_in_date)
            for previous, current in zip(bookings, bookings[1:]):
                if not are_segments_sequential(previous.check_out_date, current.check_in_date, mode):
                    raise ValidationError(
                        f"Bookings are not consecutive: {previous.check_out_date:%d.%m.%Y} "
                        f"is followed by {current.check_in_date:%d.%m.%Y}"
                    )

            if discount_percent is None:
                for booking in bookings:
                    if booking.discount_percent == 0 and booking.discount_amount > 0:
                        raise ValidationError(
                            f"Booking {booking.booking_id} has a fixed discount of {booking.discount_amount}; "
                            f"specify a discount percentage for the merged booking"
                        )
                discount_percent = max(b.discount_percent for b in bookings)
            discount = normalize_discount(discount_percent)

            parent_id = uuid4()
            children = []
            for order, booking in enumerate(bookings, start=1):
                child = CompositeChild(
                    **booking.model_dump(exclude={"version", "modified_at"}),
                    parent_booking_id=parent_id,
                    segment_order=order
                )
                child.discount_percent = discount
                child.discount_amount = Decimal("0.00")
                child.recalculate_total()
                children.append(child)

            pet_ids = list(dict.fromkeys(p for b in bookings for p in b.pet_ids))
            requests = "; ".join(b.special_requests for b in bookings if b.special_requests)
            parent = CompositeParent(
                booking_id=parent_id,
                client_id=bookings[0].client_id,
                room_type_id=bookings[0].room_type_id,
                check_in_date=bookings[0].check_in_date,
                check_out_date=bookings[-1].check_out_date,
                pet_ids=pet_ids,
                number_of_pets=max(1, len(pet_ids)),
                special_requests=requests or None,
                discount_percent=discount,
                segments=children
            )
            parent.validate_segments(mode)
            parent.refresh_from_segments()
            self._grant_approval(parent, None)

            saved = await self.repository.save(parent)
            for booking in bookings:
                await self.repository.delete(booking.booking_id)
            logger.info(
                "Merged %s bookings into composite booking %s, required prepayment %s",
                len(bookings), parent_id, saved.required_prepayment_amount
            )
            return saved

    async def update_discount(
        self,
        booking_id: UUID,
        discount_percent: Optional[Decimal] = None,
        discount_amount: Optional[Decimal] = None
    ) -> Booking:
        """Set a percentage or a fixed discount and re-derive the total"""
        if (discount_percent is None) == (discount_amount is None):
            raise ValidationError("Specify either a discount percentage or a discount amount")
        async with self.uow:
            root = await self._get_managed_root(booking_id)
            if root.status.is_terminal:
                raise InvalidStateError(f"Cannot change discount in status {root.status.value}")

            if isinstance(root, CompositeParent):
                if discount_percent is None:
                    raise ValidationError("Composite bookings accept percentage discounts only")
                percent = normalize_discount(discount_percent)
                for segment in root.segments:
                    segment.discount_percent = percent
                    segment.discount_amount = Decimal("0.00")
                    segment.recalculate_total()
                root.discount_percent = percent
                root.discount_amount = Decimal("0.00")
                root.refresh_from_segments()
            elif discount_percent is not None:
                root.discount_percent = normalize_discount(discount_percent)
                root.discount_amount = Decimal("0.00")
                root.recalculate_total()
            else:
                amount = round_money(discount_amount)
                subtotal = root.base_price + root.additional_pets_price + root.services_price
                if amount < 0 or amount > subtotal:
                    raise ValidationError(f"Discount amount must be between 0 and {subtotal}")
                root.discount_percent = Decimal("0")
                root.discount_amount = amount
                root.recalculate_total()
            root.touch()
            return await self.repository.update(root)

    async def add_service(
        self,
        booking_id: UUID,
        name: str,
        quantity: int,
        unit_price: Decimal,
        service_date: Optional[date] = None
    ) -> Booking:
        """Charge an additional service on a booking or segment"""
        async with self.uow:
            root = await self._get_root(booking_id)
            target = root.find_owner(booking_id) if isinstance(root, CompositeParent) else root
            if isinstance(target, CompositeParent):
                raise InvalidStateError("Services are charged on a segment of a composite booking")
            if target.status.is_terminal:
                raise InvalidStateError(f"Cannot add services in status {target.status.value}")
            line = BookingServiceLine(
                name=name, quantity=quantity, unit_price=unit_price, service_date=service_date
            )
            target.add_service(line)
            if isinstance(root, CompositeParent):
                root.refresh_from_segments()
                root.touch()
            logger.info("Service '%s' x%s added to booking %s", name, quantity, booking_id)
            return await self.repository.update(root)

    # ==================== QUERIES ====================
    async def get_booking(self, booking_id: UUID) -> Booking:
        """Get booking or segment by ID"""
        booking = await self.repository.find_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    async def get_client_bookings(self, client_id: UUID) -> List[Booking]:
        """Get all bookings of a client"""
        bookings = await self.repository.find_by_client_id(client_id)
        return sorted(bookings, key=lambda b: b.check_in_date)

    async def list_root_bookings(self) -> List[Booking]:
        """Get all bookings with segments folded into their parents"""
        bookings = await self.repository.find_all_roots()
        return sorted(bookings, key=lambda b: b.created_at, reverse=True)

    async def bookings_requiring_payment(self) -> List[Booking]:
        """Live bookings that still owe money"""
        return [
            b for b in await self.repository.find_all_roots()
            if b.status in PAYABLE_STATUSES and b.remaining_amount > settings.ROUNDING_TOLERANCE
        ]

    async def bookings_requiring_refund(self) -> List[Booking]:
        """Settled bookings still holding a client's money"""
        return [
            b for b in await self.repository.find_all_roots()
            if b.status in SETTLED_STATUSES
            and not b.overpayment_converted_to_revenue
            and b.credit_balance > settings.ROUNDING_TOLERANCE
        ]
