# models/schemas/payment.py
from typing import Any, Dict, List, Optional
from decimal import Decimal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator

from aptpay.models.enums import (
    FailureKind,
    PaymentEventType,
    PaymentStatus,
    ReconciliationStatus,
)
from .base import TimestampModel


class CreatePaymentRequest(BaseModel):
    """Request model for opening a payment once the user confirms the scanned intent"""

    merchant_id: str = Field(examples=["coffee-shop"])
    wallet_address: str = Field(examples=["0x3a9f...c01d"])
    merchant_upi_id: str = Field(examples=["shop@upi"])
    amount_inr: Optional[Decimal] = Field(
        default=None, gt=0, examples=["150.50"], title="Fiat amount owed to the merchant"
    )
    stablecoin_amount: Optional[Decimal] = Field(
        default=None, gt=0, examples=["2"], title="Amount of the paying asset"
    )
    stablecoin: str = Field(default="USDC", examples=["USDC"])
    payee_name: Optional[str] = Field(default=None, examples=["Shop"])
    transaction_note: Optional[str] = Field(default=None, examples=["Lunch"])
    qr_payload: Optional[str] = Field(default=None, title="Raw scanned QR string")

    @model_validator(mode="after")
    def validate_amounts(self) -> "CreatePaymentRequest":
        if (self.amount_inr is None) == (self.stablecoin_amount is None):
            raise ValueError("Exactly one of amount_inr or stablecoin_amount is required")
        if not self.merchant_upi_id.strip() or not self.wallet_address.strip():
            raise ValueError("merchant_upi_id and wallet_address are required")
        return self


class CreatePaymentResponse(BaseModel):
    payment_id: str
    amount_inr: Decimal
    stablecoin_amount: Decimal
    exchange_rate: Decimal
    escrow_address: str


class ConfirmPaymentRequest(BaseModel):
    payment_id: str
    chain_transaction_hash: str = Field(examples=["0x9c1e...77ab"], min_length=1)


class PaymentResponse(TimestampModel):
    id: str
    merchant_id: str
    wallet_address: str
    merchant_upi_id: str
    payee_name: Optional[str] = None
    transaction_note: Optional[str] = None
    amount_fiat: Decimal
    stablecoin_amount: Decimal
    exchange_rate: Decimal
    status: PaymentStatus
    chain_transaction_hash: Optional[str] = None
    payout_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    reconciliation_status: ReconciliationStatus


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentResponse]
    total: int
    page: int
    total_pages: int


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    event_type: PaymentEventType
    from_status: Optional[PaymentStatus] = None
    to_status: PaymentStatus
    detail: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RefundRequest(BaseModel):
    note: str = Field(min_length=1, examples=["Refunded 1.79 USDC to sender"])
