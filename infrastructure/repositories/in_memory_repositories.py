"""In-Memory Repository Implementations"""
import asyncio
import logging
from typing import Optional, List, Dict
from uuid import UUID

from domain.repositories import (
    BookingRepository, RoomTypeRepository, RoomRepository, PaymentRepository,
    BookingSettingsRepository, UnitOfWork
)
from domain.entities import (
    Booking, BookingSettings, CompositeParent, Payment, Room, RoomType,
    SETTINGS_SINGLETON_ID
)
from domain.enums import PaymentStatus
from domain.exceptions import ConcurrencyError, NotFoundError, ValidationError

logger = logging.getLogger("pet_hotel.storage")


def _copy(model):
    return model.model_copy(deep=True)


def _flatten(root: Booking) -> List[Booking]:
    """Root followed by its segments"""
    if isinstance(root, CompositeParent):
        return [root, *root.ordered_segments()]
    return [root]


class InMemoryBookingRepository(BookingRepository):
    """In-memory implementation of BookingRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Booking] = {}

    async def save(self, booking: Booking) -> Booking:
        """Save booking to memory"""
        self._storage[booking.booking_id] = _copy(booking)
        return _copy(booking)

    async def find_by_id(self, booking_id: UUID) -> Optional[Booking]:
        """Find booking or segment by ID"""
        for root in self._storage.values():
            for booking in _flatten(root):
                if booking.booking_id == booking_id:
                    return _copy(booking)
        return None

    async def find_root(self, booking_id: UUID) -> Optional[Booking]:
        """Find the root aggregate holding booking_id"""
        if booking_id in self._storage:
            return _copy(self._storage[booking_id])
        for root in self._storage.values():
            if isinstance(root, CompositeParent) and root.segment(booking_id):
                return _copy(root)
        return None

    async def find_by_client_id(self, client_id: UUID) -> List[Booking]:
        """Find root bookings by client ID"""
        return [_copy(b) for b in self._storage.values() if b.client_id == client_id]

    async def find_all_roots(self) -> List[Booking]:
        """Find all root bookings"""
        return [_copy(b) for b in self._storage.values()]

    async def find_for_room_type(self, room_type_id: UUID) -> List[Booking]:
        """Find roots and segments of a room type"""
        return [
            _copy(booking)
            for root in self._storage.values()
            for booking in _flatten(root)
            if booking.room_type_id == room_type_id
        ]

    async def find_for_room(self, room_id: UUID) -> List[Booking]:
        """Find roots and segments assigned to a room"""
        return [
            _copy(booking)
            for root in self._storage.values()
            for booking in _flatten(root)
            if booking.assigned_room_id == room_id
        ]

    async def has_active_bookings(self) -> bool:
        """Whether any booking is still in progress"""
        return any(not b.status.is_terminal for b in self._storage.values())

    async def update(self, booking: Booking) -> Booking:
        """Update booking"""
        stored = self._storage.get(booking.booking_id)
        if stored is None:
            raise NotFoundError("Booking", booking.booking_id)
        if stored.version != booking.version:
            logger.warning(
                "Stale write rejected for booking %s (stored v%s, got v%s)",
                booking.booking_id, stored.version, booking.version
            )
            raise ConcurrencyError(
                f"Booking {booking.booking_id} was modified concurrently, reload and retry"
            )
        updated = _copy(booking)
        updated.version += 1
        self._storage[booking.booking_id] = updated
        return _copy(updated)

    async def delete(self, booking_id: UUID) -> bool:
        """Delete booking"""
        if booking_id in self._storage:
            del self._storage[booking_id]
            return True
        return False

    def iter_roots(self):
        return iter(self._storage.values())


class InMemoryRoomTypeRepository(RoomTypeRepository):
    """In-memory implementation of RoomTypeRepository"""

    def __init__(self):
        self._storage: Dict[UUID, RoomType] = {}

    async def save(self, room_type: RoomType) -> RoomType:
        """Save room type to memory"""
        self._storage[room_type.room_type_id] = _copy(room_type)
        return room_type

    async def find_by_id(self, room_type_id: UUID) -> Optional[RoomType]:
        """Find room type by ID"""
        room_type = self._storage.get(room_type_id)
        return _copy(room_type) if room_type else None

    async def find_all(self) -> List[RoomType]:
        """Find all room types"""
        return [_copy(rt) for rt in self._storage.values()]


class InMemoryRoomRepository(RoomRepository):
    """In-memory implementation of RoomRepository"""

    def __init__(self):
        self._storage: Dict[UUID, Room] = {}

    async def save(self, room: Room) -> Room:
        """Save room to memory"""
        self._storage[room.room_id] = _copy(room)
        return room

    async def find_by_id(self, room_id: UUID) -> Optional[Room]:
        """Find room by ID"""
        room = self._storage.get(room_id)
        return _copy(room) if room else None

    async def find_active_by_room_type(self, room_type_id: UUID) -> List[Room]:
        """Find active rooms of a type"""
        rooms = [
            r for r in self._storage.values()
            if r.room_type_id == room_type_id and r.is_active
        ]
        return [_copy(r) for r in sorted(rooms, key=lambda r: r.room_number)]

    async def count_active_by_room_type(self, room_type_id: UUID) -> int:
        """Count active rooms of a type"""
        return sum(
            1 for r in self._storage.values()
            if r.room_type_id == room_type_id and r.is_active
        )


class InMemoryPaymentRepository(PaymentRepository):
    """Payments read straight out of the stored booking aggregates"""

    def __init__(self, booking_repository: InMemoryBookingRepository):
        self._bookings = booking_repository

    def _all(self) -> List[Payment]:
        return [
            payment
            for root in self._bookings.iter_roots()
            for payment in root.all_payments()
        ]

    async def find_by_id(self, payment_id: UUID) -> Optional[Payment]:
        """Find payment by ID"""
        for payment in self._all():
            if payment.payment_id == payment_id:
                return _copy(payment)
        return None

    async def find_by_booking_id(self, booking_id: UUID) -> List[Payment]:
        """Find payments of a booking"""
        booking = await self._bookings.find_by_id(booking_id)
        if booking is None:
            return []
        return sorted(booking.all_payments(), key=lambda p: p.created_at)

    async def find_pending(self) -> List[Payment]:
        """Find pending payments, oldest first"""
        pending = [p for p in self._all() if p.payment_status == PaymentStatus.PENDING]
        return [_copy(p) for p in sorted(pending, key=lambda p: p.created_at)]


class InMemoryBookingSettingsRepository(BookingSettingsRepository):
    """In-memory implementation of BookingSettingsRepository"""

    def __init__(self):
        self._storage: Dict[UUID, BookingSettings] = {}

    async def get_singleton(self) -> Optional[BookingSettings]:
        """Return the settings record"""
        record = self._storage.get(SETTINGS_SINGLETON_ID)
        return _copy(record) if record else None

    async def save(self, booking_settings: BookingSettings) -> BookingSettings:
        """Save the settings record; only the singleton identity is accepted"""
        if booking_settings.settings_id != SETTINGS_SINGLETON_ID or not booking_settings.is_singleton:
            raise ValidationError("Only one BookingSettings record may exist")
        self._storage[SETTINGS_SINGLETON_ID] = _copy(booking_settings)
        return _copy(booking_settings)


class InMemoryUnitOfWork(UnitOfWork):
    """Holds a process-wide lock for the duration of one operation"""

    def __init__(self):
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await self._lock.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            logger.debug("Operation aborted: %s", exc_val)
        self._lock.release()
