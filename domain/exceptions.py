"""Domain Exceptions"""


class BookingEngineError(ValueError):
    """Base error for booking and payment operations"""
    pass


class ValidationError(BookingEngineError):
    """Input is malformed; the caller can correct it and retry"""
    pass


class InvalidStateError(BookingEngineError):
    """Operation is not legal from the aggregate's current state"""
    pass


class RoomUnavailableError(BookingEngineError):
    """Availability check failed at commit time"""
    pass


class NotFoundError(BookingEngineError):
    """Referenced entity does not exist"""

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyError(BookingEngineError):
    """Write rejected because the stored aggregate changed since it was read"""
    pass
