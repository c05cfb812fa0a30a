"""Shared fixtures: in-memory stores wired into the application services"""
import pytest
from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

from application.payment_services import PaymentService
from application.services import AvailabilityService, BookingService, BookingSettingsService
from domain.entities import Room, RoomType
from domain.enums import BookingCalculationMode
from infrastructure.repositories.in_memory_repositories import (
    InMemoryBookingRepository, InMemoryBookingSettingsRepository, InMemoryPaymentRepository,
    InMemoryRoomRepository, InMemoryRoomTypeRepository, InMemoryUnitOfWork
)


# ============================================================================
# REPOSITORIES
# ============================================================================

@pytest.fixture
def booking_repository():
    return InMemoryBookingRepository()


@pytest.fixture
def room_type_repository():
    return InMemoryRoomTypeRepository()


@pytest.fixture
def room_repository():
    return InMemoryRoomRepository()


@pytest.fixture
def payment_repository(booking_repository):
    return InMemoryPaymentRepository(booking_repository)


@pytest.fixture
def settings_repository():
    return InMemoryBookingSettingsRepository()


@pytest.fixture
def uow():
    return InMemoryUnitOfWork()


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture
def settings_service(settings_repository, booking_repository, uow):
    return BookingSettingsService(settings_repository, booking_repository, uow)


@pytest.fixture
def availability_service(booking_repository, room_repository, settings_service):
    return AvailabilityService(booking_repository, room_repository, settings_service)


@pytest.fixture
def booking_service(booking_repository, room_type_repository, availability_service, settings_service, uow):
    return BookingService(
        booking_repository, room_type_repository, availability_service, settings_service, uow
    )


@pytest.fixture
def payment_service(booking_repository, payment_repository, settings_service, uow):
    return PaymentService(booking_repository, payment_repository, settings_service, uow)


@pytest.fixture
async def nights_mode(settings_service):
    """Switch the facility to nights-based counting"""
    return await settings_service.update_settings(calculation_mode=BookingCalculationMode.NIGHTS)


# ============================================================================
# CATALOG
# ============================================================================

@pytest.fixture
async def standard_type(room_type_repository, room_repository):
    """'Standard' type: 1000 per unit, 200 per extra pet, three rooms"""
    room_type = RoomType(
        name="Standard",
        max_capacity=2,
        price_per_unit=Decimal("1000"),
        price_per_additional_pet=Decimal("200")
    )
    await room_type_repository.save(room_type)
    for number in ("101", "102", "103"):
        await room_repository.save(Room(room_number=number, room_type_id=room_type.room_type_id, floor=1))
    return room_type


@pytest.fixture
async def suite_type(room_type_repository, room_repository):
    """'Suite' type: 2000 per unit, one room"""
    room_type = RoomType(
        name="Suite",
        max_capacity=3,
        price_per_unit=Decimal("2000"),
        price_per_additional_pet=Decimal("500")
    )
    await room_type_repository.save(room_type)
    await room_repository.save(Room(room_number="201", room_type_id=room_type.room_type_id, floor=2))
    return room_type


@pytest.fixture
async def standard_rooms(room_repository, standard_type):
    return await room_repository.find_active_by_room_type(standard_type.room_type_id)


# ============================================================================
# PEOPLE AND DATES
# ============================================================================

@pytest.fixture
def client_id():
    return uuid4()


@pytest.fixture
def pet_id():
    return uuid4()


@pytest.fixture
def admin_id():
    return uuid4()


@pytest.fixture
def start():
    """A check-in date safely in the future"""
    return date.today() + timedelta(days=10)
