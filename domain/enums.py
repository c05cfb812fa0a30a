"""Domain Enums"""
from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "Pending"
    WAITING_FOR_PAYMENT_APPROVAL = "WaitingForPaymentApproval"
    AWAITING_PAYMENT = "AwaitingPayment"
    PAYMENT_PENDING = "PaymentPending"
    CONFIRMED = "Confirmed"
    CHECKED_IN = "CheckedIn"
    CHECKED_OUT = "CheckedOut"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.CHECKED_OUT, BookingStatus.CANCELLED)


class BookingCalculationMode(str, Enum):
    DAYS = "Days"
    NIGHTS = "Nights"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class PaymentType(str, Enum):
    PREPAYMENT = "Prepayment"
    FULL_PAYMENT = "FullPayment"


class PaymentMethod(str, Enum):
    CARD = "Card"
    CASH = "Cash"
    ONLINE = "Online"
    QR_CODE = "QrCode"
    PHONE_TRANSFER = "PhoneTransfer"
