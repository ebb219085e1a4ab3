from .types import (
    PaymentIntent,
    ParsedPayload,
    Rejection,
    RejectionReason,
    UNKNOWN_MERCHANT,
)
from .classifier import UpiQRParser, default_parser, parse_upi_qr
from .validate import validate_intent

__all__ = [
    "PaymentIntent",
    "ParsedPayload",
    "Rejection",
    "RejectionReason",
    "UNKNOWN_MERCHANT",
    "UpiQRParser",
    "default_parser",
    "parse_upi_qr",
    "validate_intent",
]
