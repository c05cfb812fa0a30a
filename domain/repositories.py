"""Domain Repository Interfaces"""
from abc import ABC, abstractmethod
from typing import Optional, List
from uuid import UUID

from domain.entities import Booking, BookingSettings, Payment, Room, RoomType


class BookingRepository(ABC):
    """Repository interface for the Booking aggregate.

    Plain bookings and composite parents are stored as roots; segments live
    inside their parent and are reachable through it.
    """

    @abstractmethod
    async def save(self, booking: Booking) -> Booking:
        """Save a new root booking"""
        pass

    @abstractmethod
    async def find_by_id(self, booking_id: UUID) -> Optional[Booking]:
        """Find a root booking or a segment by ID"""
        pass

    @abstractmethod
    async def find_root(self, booking_id: UUID) -> Optional[Booking]:
        """Find the root aggregate that holds booking_id"""
        pass

    @abstractmethod
    async def find_by_client_id(self, client_id: UUID) -> List[Booking]:
        """Find root bookings of a client"""
        pass

    @abstractmethod
    async def find_all_roots(self) -> List[Booking]:
        """Find all root bookings"""
        pass

    @abstractmethod
    async def find_for_room_type(self, room_type_id: UUID) -> List[Booking]:
        """Find roots and segments booked under a room type"""
        pass

    @abstractmethod
    async def find_for_room(self, room_id: UUID) -> List[Booking]:
        """Find roots and segments assigned to a room"""
        pass

    @abstractmethod
    async def has_active_bookings(self) -> bool:
        """Whether any booking is in a non-terminal status"""
        pass

    @abstractmethod
    async def update(self, booking: Booking) -> Booking:
        """Replace a root booking; rejects stale versions"""
        pass

    @abstractmethod
    async def delete(self, booking_id: UUID) -> bool:
        """Delete a root booking together with everything it owns"""
        pass


class RoomTypeRepository(ABC):
    """Repository interface for RoomType"""

    @abstractmethod
    async def save(self, room_type: RoomType) -> RoomType:
        """Save room type"""
        pass

    @abstractmethod
    async def find_by_id(self, room_type_id: UUID) -> Optional[RoomType]:
        """Find room type by ID"""
        pass

    @abstractmethod
    async def find_all(self) -> List[RoomType]:
        """Find all room types"""
        pass


class RoomRepository(ABC):
    """Repository interface for Room"""

    @abstractmethod
    async def save(self, room: Room) -> Room:
        """Save room"""
        pass

    @abstractmethod
    async def find_by_id(self, room_id: UUID) -> Optional[Room]:
        """Find room by ID"""
        pass

    @abstractmethod
    async def find_active_by_room_type(self, room_type_id: UUID) -> List[Room]:
        """Find active rooms of a type ordered by room number"""
        pass

    @abstractmethod
    async def count_active_by_room_type(self, room_type_id: UUID) -> int:
        """Count active rooms of a type"""
        pass


class PaymentRepository(ABC):
    """Read-side view over the payments embedded in booking aggregates"""

    @abstractmethod
    async def find_by_id(self, payment_id: UUID) -> Optional[Payment]:
        """Find payment by ID"""
        pass

    @abstractmethod
    async def find_by_booking_id(self, booking_id: UUID) -> List[Payment]:
        """Find payments of a booking, including its segments' payments"""
        pass

    @abstractmethod
    async def find_pending(self) -> List[Payment]:
        """Find payments awaiting an admin decision"""
        pass


class BookingSettingsRepository(ABC):
    """Repository interface for the BookingSettings singleton"""

    @abstractmethod
    async def get_singleton(self) -> Optional[BookingSettings]:
        """Return the settings record if it exists"""
        pass

    @abstractmethod
    async def save(self, booking_settings: BookingSettings) -> BookingSettings:
        """Insert or replace the settings record"""
        pass


class UnitOfWork(ABC):
    """Serialises check-then-write sequences against the store"""

    @abstractmethod
    async def __aenter__(self) -> "UnitOfWork":
        pass

    @abstractmethod
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        pass
