from fastapi import APIRouter, Depends, HTTPException, Request, status

from aptpay.database.dependencies import (
    get_coordinator,
    get_payout_client,
    get_qr_parser,
    get_webhook_signature,
)
from aptpay.models.schemas.upi import (
    BeneficiaryResponse,
    ParseQRRequest,
    ParseQRResponse,
    PayoutRequest,
    PayoutResponse,
    PayoutStatusResponse,
    WebhookPayload,
)
from aptpay.services.base import ServiceError
from aptpay.services.payout import PayoutCoordinator
from aptpay.services.upi import UpiPayoutClient
from aptpay.utils.upi import Rejection, UpiQRParser, validate_intent

from .errors import to_http_error

router = APIRouter(prefix="/upi", tags=["UPI"])

INVALID_QR_MESSAGE = "This is not a valid UPI QR code"


@router.post("/parse", response_model=ParseQRResponse)
async def parse_qr(req: ParseQRRequest, parser: UpiQRParser = Depends(get_qr_parser)):
    """Turn a decoded QR string into a payment intent"""
    parsed = parser.classify(req.data)
    if not parsed.recognized:
        return ParseQRResponse(valid=False, dialect=parsed.dialect, error=INVALID_QR_MESSAGE)

    checked = validate_intent(parsed.intent)
    if isinstance(checked, Rejection):
        return ParseQRResponse(valid=False, dialect=parsed.dialect, error=checked.detail)

    return ParseQRResponse(valid=True, dialect=parsed.dialect, intent=checked)


@router.post("/payout", response_model=PayoutResponse)
async def initiate_payout(req: PayoutRequest, coordinator: PayoutCoordinator = Depends(get_coordinator)):
    """Trigger the UPI payout for a confirmed payment"""
    try:
        payout = await coordinator.initiate_payout(req.payment_id, req.merchant_upi_id, req.amount_inr)
    except ServiceError as e:
        raise to_http_error(e)

    return PayoutResponse(
        payout_id=payout.payout_id,
        status=payout.status,
        message=payout.failure_reason or "UPI payout initiated",
    )


@router.get("/status/{payout_id}", response_model=PayoutStatusResponse)
async def get_payout_status(payout_id: str, coordinator: PayoutCoordinator = Depends(get_coordinator)):
    payout = coordinator.get_payout(payout_id)
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")
    return PayoutStatusResponse.model_validate(payout)


@router.get("/beneficiary/{upi_id}", response_model=BeneficiaryResponse)
async def get_beneficiary(upi_id: str, client: UpiPayoutClient = Depends(get_payout_client)):
    details = await client.verify_beneficiary(upi_id)
    if details is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="UPI ID could not be verified")
    return BeneficiaryResponse(
        upi_id=details.get("upi_id", upi_id),
        name=details.get("name"),
        verified=bool(details.get("verified", False)),
    )


@router.post("/webhook", openapi_extra={"requestBody": {"content": {"application/json": {"schema": WebhookPayload.model_json_schema()}}}})
async def payout_webhook(
    request: Request,
    signature=Depends(get_webhook_signature),
    coordinator: PayoutCoordinator = Depends(get_coordinator),
):
    """Payout status updates from the provider, signed with HMAC-SHA256 over the raw body"""
    raw_body = await request.body()
    try:
        await coordinator.handle_webhook(raw_body, signature)
    except ServiceError as e:
        raise to_http_error(e)

    return {"success": True, "message": "Webhook processed successfully"}
