from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class BookingPaymentStatus(str, Enum):
    PENDING = "PENDING"
    DEPOSIT_PAID = "DEPOSIT_PAID"
    FULLY_PAID = "FULLY_PAID"


class PaymentType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"


class PaymentRecordStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    CASH = "CASH"
    TRANSFER = "TRANSFER"


class ProviderEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class NotificationSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
