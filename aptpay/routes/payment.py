from typing import List
from fastapi import APIRouter, Depends, Query

from aptpay.database.dependencies import get_coordinator, get_ledger
from aptpay.models.schemas.payment import (
    ConfirmPaymentRequest,
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentEventResponse,
    PaymentHistoryResponse,
    PaymentResponse,
    RefundRequest,
)
from aptpay.models.schemas.upi import PayoutResponse
from aptpay.services.base import ServiceError
from aptpay.services.ledger import PaymentLedger
from aptpay.services.payout import PayoutCoordinator

from .errors import to_http_error

router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("/initiate", response_model=CreatePaymentResponse)
async def initiate_payment(req: CreatePaymentRequest, coordinator: PayoutCoordinator = Depends(get_coordinator)):
    """Open a pending payment at the current rate; the wallet then pays the escrow address"""
    try:
        payment = await coordinator.create_payment(req)
    except ServiceError as e:
        raise to_http_error(e)

    return CreatePaymentResponse(
        payment_id=payment.id,
        amount_inr=payment.amount_fiat,
        stablecoin_amount=payment.stablecoin_amount,
        exchange_rate=payment.exchange_rate,
        escrow_address=coordinator.chain_client.escrow_address,
    )


@router.get("/status/{payment_id}", response_model=PaymentResponse)
async def get_payment_status(payment_id: str, ledger: PaymentLedger = Depends(get_ledger)):
    try:
        return PaymentResponse.model_validate(ledger.get_or_raise(payment_id))
    except ServiceError as e:
        raise to_http_error(e)


@router.post("/confirm", response_model=PaymentResponse)
async def confirm_payment(req: ConfirmPaymentRequest, coordinator: PayoutCoordinator = Depends(get_coordinator)):
    """Verify the on-chain transfer and start the UPI payout"""
    try:
        payment = await coordinator.confirm_payment(req.payment_id, req.chain_transaction_hash)
    except ServiceError as e:
        raise to_http_error(e)
    return PaymentResponse.model_validate(payment)


@router.get("/history/{wallet_address}", response_model=PaymentHistoryResponse)
async def get_payment_history(
    wallet_address: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    ledger: PaymentLedger = Depends(get_ledger),
):
    history = ledger.get_history(wallet_address, page, limit)
    return PaymentHistoryResponse(
        payments=[PaymentResponse.model_validate(p) for p in history["payments"]],
        total=history["total"],
        page=history["page"],
        total_pages=history["total_pages"],
    )


@router.get("/{payment_id}/events", response_model=List[PaymentEventResponse])
async def get_payment_events(payment_id: str, ledger: PaymentLedger = Depends(get_ledger)):
    try:
        ledger.get_or_raise(payment_id)
    except ServiceError as e:
        raise to_http_error(e)
    return [PaymentEventResponse.model_validate(e) for e in ledger.get_events(payment_id)]


@router.post("/{payment_id}/retry-payout", response_model=PayoutResponse)
async def retry_payout(payment_id: str, coordinator: PayoutCoordinator = Depends(get_coordinator)):
    """Manual remediation: pay out again after the payout leg failed"""
    try:
        payout = await coordinator.retry_payout(payment_id)
    except ServiceError as e:
        raise to_http_error(e)
    return PayoutResponse(
        payout_id=payout.payout_id,
        status=payout.status,
        message=payout.failure_reason or "UPI payout retried",
    )


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def mark_refunded(
    payment_id: str,
    req: RefundRequest,
    coordinator: PayoutCoordinator = Depends(get_coordinator),
):
    try:
        payment = coordinator.mark_refunded(payment_id, req.note)
    except ServiceError as e:
        raise to_http_error(e)
    return PaymentResponse.model_validate(payment)
