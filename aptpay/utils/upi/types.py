import re
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from aptpay.models.enums import QRDialect

UNKNOWN_MERCHANT = "Unknown Merchant"

AMOUNT_PATTERN = re.compile(r"^\d+(\.\d+)?$")


class PaymentIntent(BaseModel):
    """Canonical payment request extracted from a scanned UPI QR code.

    Only ``payee_address`` is required; every other field is advisory and
    may be empty. ``amount`` is kept as the string found in the payload, the
    user supplies it downstream when it is empty.
    """

    model_config = ConfigDict(frozen=True)

    payee_address: str = Field(examples=["shop@upi"])
    payee_name: str = Field(default=UNKNOWN_MERCHANT, examples=["Tea Shop"])
    amount: str = Field(default="", examples=["150.50"])
    transaction_note: str = Field(default="", examples=["Lunch"])
    merchant_code: str = Field(default="", examples=["5411"])
    transaction_ref: str = Field(default="", examples=["TXN12345"])
    raw_payload: str = Field(default="", repr=False)

    @computed_field
    @property
    def amount_decimal(self) -> Optional[Decimal]:
        """The amount as a Decimal, or None when absent or not numeric."""
        if not self.amount or not AMOUNT_PATTERN.match(self.amount):
            return None
        try:
            return Decimal(self.amount)
        except InvalidOperation:
            return None


class DialectMatcher(NamedTuple):
    """A predicate + parser pair for one QR payload dialect"""

    dialect: QRDialect
    matches: Callable[[str], bool]
    parse: Callable[[str], Optional[PaymentIntent]]


class ParsedPayload(NamedTuple):
    dialect: QRDialect
    intent: Optional[PaymentIntent]

    @property
    def recognized(self) -> bool:
        return self.intent is not None


class RejectionReason(str, Enum):
    MISSING_PAYEE_ADDRESS = "MISSING_PAYEE_ADDRESS"
    INVALID_AMOUNT = "INVALID_AMOUNT"


class Rejection(NamedTuple):
    reason: RejectionReason
    detail: str
