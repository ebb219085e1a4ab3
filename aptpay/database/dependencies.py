from typing import Optional
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session

from aptpay.database.database import get_db
from aptpay.services.ledger import PaymentLedger
from aptpay.services.payout import PayoutCoordinator
from aptpay.services.rates import RateConverter
from aptpay.services.upi import UpiPayoutClient
from aptpay.utils.upi import UpiQRParser


webhook_signature_header = APIKeyHeader(name="X-Webhook-Signature", auto_error=False)


def get_rate_converter(request: Request) -> RateConverter:
    return request.app.state.rate_converter


def get_payout_client(request: Request) -> UpiPayoutClient:
    return request.app.state.payout_client


def get_qr_parser(request: Request) -> UpiQRParser:
    return request.app.state.qr_parser


def get_ledger(db: Session = Depends(get_db)) -> PaymentLedger:
    return PaymentLedger(db)


def get_coordinator(request: Request, db: Session = Depends(get_db)) -> PayoutCoordinator:
    state = request.app.state
    return PayoutCoordinator(
        db,
        chain_client=state.chain_client,
        payout_client=state.payout_client,
        rate_converter=state.rate_converter,
        webhook_secret=state.webhook_secret,
    )


def get_webhook_signature(signature: Optional[str] = Depends(webhook_signature_header)) -> Optional[str]:
    return signature
