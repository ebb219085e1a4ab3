from enum import Enum


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class FailureKind(str, Enum):
    """Which leg of the payment failed"""

    CONFIRMATION = "confirmation"
    PAYOUT = "payout"


class ReconciliationStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    REQUIRED = "required"
    PAYOUT_RETRIED = "payout_retried"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


class PaymentEventType(str, Enum):
    CREATED = "CREATED"
    CONFIRMED = "CONFIRMED"
    CONFIRMATION_FAILED = "CONFIRMATION_FAILED"
    PAYOUT_INITIATED = "PAYOUT_INITIATED"
    PAYOUT_SUCCEEDED = "PAYOUT_SUCCEEDED"
    PAYOUT_FAILED = "PAYOUT_FAILED"
    PAYOUT_RETRIED = "PAYOUT_RETRIED"
    REFUNDED = "REFUNDED"


class QRDialect(str, Enum):
    URL = "URL"
    HEURISTIC = "HEURISTIC"
    JSON = "JSON"
    UNRECOGNIZED = "UNRECOGNIZED"
