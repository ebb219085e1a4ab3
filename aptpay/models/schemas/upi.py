from typing import Optional
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field

from aptpay.models.enums import PayoutStatus, QRDialect
from aptpay.utils.upi import PaymentIntent


class ParseQRRequest(BaseModel):
    data: str = Field(examples=["upi://pay?pa=shop@upi&pn=Shop&am=150.50&tn=Lunch"])


class ParseQRResponse(BaseModel):
    valid: bool
    dialect: QRDialect
    intent: Optional[PaymentIntent] = None
    error: Optional[str] = None


class PayoutRequest(BaseModel):
    payment_id: str
    merchant_upi_id: str = Field(examples=["shop@upi"])
    amount_inr: Decimal = Field(gt=0, examples=["150.50"])


class PayoutResponse(BaseModel):
    payout_id: str
    status: PayoutStatus
    message: str


class PayoutStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payout_id: str
    payment_id: str
    status: PayoutStatus
    amount: Decimal
    merchant_upi_id: str
    provider_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


class WebhookPayload(BaseModel):
    """Payout status update pushed by the provider"""

    model_config = ConfigDict(populate_by_name=True)

    payout_id: str = Field(alias="payoutId")
    status: str
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")


class BeneficiaryResponse(BaseModel):
    upi_id: str
    name: Optional[str] = None
    verified: bool = False
