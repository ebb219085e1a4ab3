from typing import Any, Callable, Dict, Optional, Set, Union
from decimal import Decimal
import asyncio
import uuid

from pydantic import ValidationError
from sqlalchemy.orm import Session

from aptpay.config import PAYOUT_POLL_INTERVAL_SECONDS, UPI_WEBHOOK_SECRET
from aptpay.models.database_models import Payment, Payout
from aptpay.models.enums import (
    FailureKind,
    PaymentEventType,
    PaymentStatus,
    PayoutStatus,
    ReconciliationStatus,
)
from aptpay.models.schemas.payment import CreatePaymentRequest
from aptpay.models.schemas.upi import WebhookPayload
from aptpay.utils.aptos.types import InvalidTransactionError, TransactionLookupError
from aptpay.utils.aptos.validate import validate_transaction
from aptpay.utils.logging import get_logger
from aptpay.utils.signature import verify_webhook_signature

from .base import BaseService, ServiceError
from .ledger import InvalidTransitionError, PaymentLedger, compute_amounts
from .rates import RateConverter
from .upi import PayoutProviderError, UpiPayoutClient, normalize_payout_status

logger = get_logger(__name__)

FIAT_CURRENCY = "INR"


class ConfirmationError(ServiceError):
    status_code = 400


class PayoutNotAllowedError(ServiceError):
    status_code = 400


class InvalidAmountError(ServiceError):
    status_code = 400


class WebhookSignatureError(ServiceError):
    status_code = 401


class WebhookPayloadError(ServiceError):
    status_code = 400


class PayoutCoordinator(BaseService[Payout]):
    """Drives a payment from on-chain confirmation to fiat payout.

    Webhooks and the status poller both end in apply_payout_status, which is
    idempotent, so they may arrive in any order and any number of times.
    """

    def __init__(
        self,
        db: Session,
        chain_client,
        payout_client: UpiPayoutClient,
        rate_converter: Optional[RateConverter] = None,
        webhook_secret: str = UPI_WEBHOOK_SECRET,
    ):
        super().__init__(db)
        self.ledger = PaymentLedger(db)
        self.chain_client = chain_client
        self.payout_client = payout_client
        self.rate_converter = rate_converter
        self.webhook_secret = webhook_secret

    # --- payment creation

    async def create_payment(self, req: CreatePaymentRequest) -> Payment:
        """Snapshot the current rate and open a pending payment."""
        if self.rate_converter is None:
            raise ServiceError("Rate converter is not configured")

        try:
            rate = await self.rate_converter.get_rate(req.stablecoin, FIAT_CURRENCY)
            amount_fiat, stablecoin_amount = compute_amounts(
                rate, amount_fiat=req.amount_inr, stablecoin_amount=req.stablecoin_amount
            )
        except ValueError as e:
            raise InvalidAmountError(str(e)) from e

        return self.ledger.create(
            merchant_id=req.merchant_id,
            wallet_address=req.wallet_address,
            merchant_upi_id=req.merchant_upi_id,
            amount_fiat=amount_fiat,
            stablecoin_amount=stablecoin_amount,
            exchange_rate=rate,
            payee_name=req.payee_name,
            transaction_note=req.transaction_note,
            qr_payload=req.qr_payload,
        )

    # --- on-chain leg

    async def confirm_payment(self, payment_id: str, tx_hash: str, initiate_payout: bool = True) -> Payment:
        """
        Accept an on-chain transfer as payment and start the payout.

        Re-confirming with the same hash is a no-op and never starts a second
        payout. A transaction that cannot be verified fails the payment.

        Raises:
            PaymentNotFoundError, InvalidTransitionError, ConfirmationError
        """
        payment = self.ledger.get_or_raise(payment_id)
        tx_hash = tx_hash.strip()

        if payment.status in (PaymentStatus.CONFIRMED, PaymentStatus.COMPLETED):
            if payment.chain_transaction_hash == tx_hash:
                logger.info(f"Payment {payment.id} already confirmed by {tx_hash}")
                return payment
            raise InvalidTransitionError(f"Payment {payment.id} is already confirmed by another transaction")

        if payment.status == PaymentStatus.FAILED:
            raise InvalidTransitionError(f"Payment {payment.id} has already failed")

        reason: Optional[str] = None
        other = self.ledger.find_by_transaction_hash(tx_hash)
        if other is not None and other.id != payment.id:
            reason = "Transaction already used for another payment"
        else:
            try:
                tx = await self.chain_client.get_transaction(tx_hash)
                validate_transaction(tx, self.chain_client.escrow_address)
            except (TransactionLookupError, InvalidTransactionError) as e:
                reason = str(e)

        if reason is not None:
            logger.warning(f"Rejecting confirmation of payment {payment.id} with {tx_hash}: {reason}")
            self.ledger.mark_failed(payment, reason, FailureKind.CONFIRMATION)
            raise ConfirmationError(reason)

        try:
            self.ledger.mark_confirmed(payment, tx_hash)
        except InvalidTransitionError:
            # lost a race with an identical confirmation
            if payment.status in (PaymentStatus.CONFIRMED, PaymentStatus.COMPLETED) and payment.chain_transaction_hash == tx_hash:
                return payment
            raise

        if initiate_payout:
            await self.initiate_payout(payment.id)
        return payment

    # --- fiat leg

    def get_payout(self, payout_id: str) -> Optional[Payout]:
        return self.db.query(Payout).where(Payout.payout_id == payout_id).first()

    def _active_payout(self, payment: Payment) -> Optional[Payout]:
        return (
            self.db.query(Payout)
            .where(
                Payout.payment_id == payment.id,
                Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.SUCCESS]),
            )
            .first()
        )

    async def initiate_payout(
        self,
        payment_id: str,
        merchant_upi_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Payout:
        """
        Start the fiat payout for a confirmed payment.

        A payout already in flight for the payment is returned instead of
        starting another one. Provider failures are recorded on the payout,
        not raised.

        Raises:
            PayoutNotAllowedError: payment is not confirmed, or the
                beneficiary / amount differ from the payment
        """
        payment = self.ledger.get_or_raise(payment_id)
        if payment.status != PaymentStatus.CONFIRMED:
            raise PayoutNotAllowedError(f"Payment {payment.id} is not confirmed (status: {payment.status.value})")

        if merchant_upi_id is not None and merchant_upi_id != payment.merchant_upi_id:
            raise PayoutNotAllowedError("merchant_upi_id does not match the payment")
        if amount is not None and Decimal(amount) != payment.amount_fiat:
            raise PayoutNotAllowedError("amount does not match the payment")

        existing = self._active_payout(payment)
        if existing is not None:
            logger.info(f"Payment {payment.id} already has payout {existing.payout_id}")
            return existing

        return await self._start_payout(payment)

    async def _start_payout(self, payment: Payment) -> Payout:
        payout = Payout(
            payment_id=payment.id,
            payout_id=str(uuid.uuid4()),
            amount=payment.amount_fiat,
            merchant_upi_id=payment.merchant_upi_id,
            status=PayoutStatus.PENDING,
            provider_response={},
        )

        def _create():
            self.db.add(payout)
            return payout

        # mapping is stored before the provider call so a crash mid-call still leaves a trace
        self._handle_db_operation(_create)
        self.ledger.record_payout(payment, payout.payout_id)

        try:
            result = await self.payout_client.initiate_payout(
                payout_id=payout.payout_id,
                payment_id=payment.id,
                merchant_upi_id=payment.merchant_upi_id,
                amount=payment.amount_fiat,
                currency=FIAT_CURRENCY,
                beneficiary_name=payment.payee_name,
            )
        except PayoutProviderError as e:
            logger.error(f"Payout {payout.payout_id} for payment {payment.id} failed: {e}")
            await self.apply_payout_status(payout.payout_id, PayoutStatus.FAILED, failure_reason=str(e))
        else:
            await self.apply_payout_status(
                payout.payout_id,
                result.status,
                transaction_id=result.transaction_id,
                failure_reason=result.message if result.status == PayoutStatus.FAILED else None,
                raw=result.raw,
            )

        self.db.refresh(payout)
        return payout

    async def apply_payout_status(
        self,
        payout_id: str,
        status: PayoutStatus,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ) -> Optional[Payment]:
        """
        Reconcile a provider status report into payout and payment state.

        Only the payment's current payout can move it. A payout that already
        reached SUCCESS or FAILED is not changed again.
        """
        payout = self.get_payout(payout_id)
        if payout is None:
            logger.warning(f"Status report for unknown payout {payout_id}")
            return None

        payment = self.ledger.get(payout.payment_id)

        if payout.status != PayoutStatus.PENDING:
            if payout.status != status:
                logger.warning(
                    f"Ignoring {status.value} for payout {payout_id}, already {payout.status.value}"
                )
            return payment

        def _update():
            payout.status = status
            if transaction_id:
                payout.provider_transaction_id = transaction_id
            if failure_reason:
                payout.failure_reason = failure_reason
            if raw:
                payout.provider_response = raw
            return payout

        self._handle_db_operation(_update)

        if status == PayoutStatus.PENDING or payment is None:
            return payment

        if payment.payout_id != payout.payout_id:
            logger.warning(f"Payout {payout_id} is not the current payout of payment {payment.id}")
            return payment

        reason = failure_reason or "Payout failed"
        try:
            if payment.status == PaymentStatus.CONFIRMED:
                if status == PayoutStatus.SUCCESS:
                    self.ledger.mark_completed(payment, payout.payout_id)
                else:
                    logger.error(f"Payment {payment.id} settled on chain but payout failed: {reason}")
                    self.ledger.mark_failed(payment, reason, FailureKind.PAYOUT)
            elif payment.reconciliation_status == ReconciliationStatus.PAYOUT_RETRIED:
                if status == PayoutStatus.SUCCESS:
                    self.ledger.set_reconciliation(
                        payment,
                        ReconciliationStatus.RESOLVED,
                        PaymentEventType.PAYOUT_SUCCEEDED,
                        {"payout_id": payout.payout_id},
                    )
                else:
                    self.ledger.set_reconciliation(
                        payment,
                        ReconciliationStatus.REQUIRED,
                        PaymentEventType.PAYOUT_FAILED,
                        {"payout_id": payout.payout_id, "reason": reason},
                        failure_reason=reason,
                    )
        except InvalidTransitionError as e:
            logger.warning(f"Payout {payout_id} status not applied: {e.message}")

        return payment

    async def handle_webhook(self, raw_body: Union[str, bytes], signature: Optional[str]) -> Optional[Payment]:
        """
        Apply a signed payout webhook.

        Raises:
            WebhookSignatureError: signature missing or wrong, nothing is applied
            WebhookPayloadError: body is not a payout status update
        """
        if not verify_webhook_signature(raw_body, signature, self.webhook_secret):
            logger.warning("Discarding payout webhook with invalid signature")
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = WebhookPayload.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning(f"Discarding malformed payout webhook: {e}")
            raise WebhookPayloadError("Invalid webhook payload") from e

        return await self.apply_payout_status(
            payload.payout_id,
            normalize_payout_status(payload.status),
            transaction_id=payload.transaction_id,
            failure_reason=payload.failure_reason,
            raw=payload.model_dump(by_alias=True),
        )

    async def poll_pending_payouts(self) -> int:
        """Ask the provider about every pending payout. Returns how many were resolved."""
        pending = self.db.query(Payout).where(Payout.status == PayoutStatus.PENDING).all()
        resolved = 0

        for payout_id in [p.payout_id for p in pending]:
            try:
                info = await self.payout_client.get_payout_status(payout_id)
            except PayoutProviderError as e:
                logger.warning(f"Could not poll payout {payout_id}: {e}")
                continue

            if info is None or info.status == PayoutStatus.PENDING:
                continue

            try:
                await self.apply_payout_status(
                    payout_id,
                    info.status,
                    transaction_id=info.transaction_id,
                    failure_reason=info.failure_reason,
                    raw=info.raw,
                )
            except ServiceError as e:
                logger.error(f"Could not apply polled status for payout {payout_id}: {e.message}")
                continue
            resolved += 1

        return resolved

    # --- manual reconciliation of payout failures

    def _require_unsettled(self, payment: Payment) -> None:
        if payment.status != PaymentStatus.FAILED or payment.failure_kind != FailureKind.PAYOUT:
            raise PayoutNotAllowedError(f"Payment {payment.id} did not fail in the payout leg")
        if payment.reconciliation_status != ReconciliationStatus.REQUIRED:
            raise PayoutNotAllowedError(
                f"Payment {payment.id} reconciliation is {payment.reconciliation_status.value}"
            )

    async def retry_payout(self, payment_id: str) -> Payout:
        """Start a new payout attempt for a payment whose crypto leg settled but payout failed."""
        payment = self.ledger.get_or_raise(payment_id)
        self._require_unsettled(payment)

        self.ledger.set_reconciliation(
            payment,
            ReconciliationStatus.PAYOUT_RETRIED,
            PaymentEventType.PAYOUT_RETRIED,
            {"previous_payout_id": payment.payout_id},
        )
        return await self._start_payout(payment)

    def mark_refunded(self, payment_id: str, note: str) -> Payment:
        """Record that the stablecoin was returned to the payer instead of paying out."""
        payment = self.ledger.get_or_raise(payment_id)
        self._require_unsettled(payment)
        return self.ledger.set_reconciliation(
            payment,
            ReconciliationStatus.REFUNDED,
            PaymentEventType.REFUNDED,
            {"note": note},
        )


class PayoutPoller:
    """Background task polling pending payouts on a fixed interval.

    A tick that starts while the previous poll is still running is skipped.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        coordinator_factory: Callable[[Session], PayoutCoordinator],
        interval: float = PAYOUT_POLL_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.coordinator_factory = coordinator_factory
        self.interval = interval
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()

    async def poll_once(self) -> Optional[int]:
        if self._lock.locked():
            logger.debug("Previous payout poll still running, skipping")
            return None

        async with self._lock:
            db = self.session_factory()
            try:
                return await self.coordinator_factory(db).poll_pending_payouts()
            finally:
                db.close()

    async def _tick(self):
        try:
            resolved = await self.poll_once()
            if resolved:
                logger.info(f"Payout poll resolved {resolved} payouts")
        except Exception as e:
            logger.error(f"Payout poll failed: {e}")

    async def run(self):
        while True:
            task = asyncio.create_task(self._tick())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            logger.info(f"Payout poller started, interval {self.interval}s")

    async def stop(self):
        tasks = [t for t in (self._task, *self._ticks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
