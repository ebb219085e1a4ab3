from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
import math

from sqlalchemy import func, update

from aptpay.models.database_models import Payment, PaymentEvent
from aptpay.models.enums import (
    FailureKind,
    PaymentEventType,
    PaymentStatus,
    ReconciliationStatus,
)
from aptpay.utils.logging import get_logger

from .base import BaseService, ServiceError

logger = get_logger(__name__)

FIAT_QUANT = Decimal("0.01")
COIN_QUANT = Decimal("0.00000001")

# pending -> confirmed -> completed, failed from pending or confirmed
ALLOWED_TRANSITIONS: Dict[PaymentStatus, Tuple[PaymentStatus, ...]] = {
    PaymentStatus.PENDING: (PaymentStatus.CONFIRMED, PaymentStatus.FAILED),
    PaymentStatus.CONFIRMED: (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
    PaymentStatus.COMPLETED: (),
    PaymentStatus.FAILED: (),
}


class PaymentNotFoundError(ServiceError):
    status_code = 404


class InvalidTransitionError(ServiceError):
    status_code = 409


def compute_amounts(
    rate: Decimal,
    amount_fiat: Optional[Decimal] = None,
    stablecoin_amount: Optional[Decimal] = None,
) -> Tuple[Decimal, Decimal]:
    """
    Fill in the missing side of a payment from the snapshotted rate.

    rate is fiat per stablecoin unit (e.g. INR per USDC).

    Returns:
        (amount_fiat, stablecoin_amount)
    """
    if rate <= 0:
        raise ValueError("Exchange rate must be positive")
    if (amount_fiat is None) == (stablecoin_amount is None):
        raise ValueError("Exactly one of amount_fiat or stablecoin_amount is required")

    if amount_fiat is not None:
        if amount_fiat <= 0:
            raise ValueError("amount_fiat must be positive")
        amount_fiat = amount_fiat.quantize(FIAT_QUANT, rounding=ROUND_HALF_UP)
        stablecoin_amount = (amount_fiat / rate).quantize(COIN_QUANT, rounding=ROUND_HALF_UP)
    else:
        if stablecoin_amount <= 0:
            raise ValueError("stablecoin_amount must be positive")
        stablecoin_amount = stablecoin_amount.quantize(COIN_QUANT, rounding=ROUND_HALF_UP)
        amount_fiat = (stablecoin_amount * rate).quantize(FIAT_QUANT, rounding=ROUND_HALF_UP)

    # both sides must survive rounding
    if amount_fiat <= 0 or stablecoin_amount <= 0:
        raise ValueError("Amount is too small after rounding")
    return amount_fiat, stablecoin_amount


class PaymentLedger(BaseService[Payment]):
    """Owns Payment rows and every change to their status.

    Status only moves along ALLOWED_TRANSITIONS. Each transition is a
    conditional UPDATE on the current status, so two writers racing on the
    same payment cannot both apply it, and each one appends a PaymentEvent.
    """

    def get(self, payment_id: str) -> Optional[Payment]:
        return self.db.query(Payment).where(Payment.id == payment_id).first()

    def get_or_raise(self, payment_id: str) -> Payment:
        payment = self.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def find_by_transaction_hash(self, tx_hash: str) -> Optional[Payment]:
        return (
            self.db.query(Payment)
            .where(Payment.chain_transaction_hash == tx_hash)
            .first()
        )

    def create(
        self,
        merchant_id: str,
        wallet_address: str,
        merchant_upi_id: str,
        amount_fiat: Decimal,
        stablecoin_amount: Decimal,
        exchange_rate: Decimal,
        payee_name: Optional[str] = None,
        transaction_note: Optional[str] = None,
        qr_payload: Optional[str] = None,
    ) -> Payment:
        """Persist a new pending payment with its snapshotted rate."""
        payment = Payment(
            merchant_id=merchant_id,
            wallet_address=wallet_address,
            merchant_upi_id=merchant_upi_id,
            payee_name=payee_name,
            transaction_note=transaction_note,
            amount_fiat=amount_fiat,
            stablecoin_amount=stablecoin_amount,
            exchange_rate=exchange_rate,
            status=PaymentStatus.PENDING,
            reconciliation_status=ReconciliationStatus.NOT_REQUIRED,
            qr_payload=qr_payload,
        )

        def _create():
            self.db.add(payment)
            self.db.flush()
            self._add_event(
                payment.id,
                PaymentEventType.CREATED,
                None,
                PaymentStatus.PENDING,
                {"exchange_rate": str(exchange_rate)},
            )
            return payment

        self._handle_db_operation(_create)
        self.db.refresh(payment)
        logger.info(f"Payment {payment.id} created for {merchant_upi_id}")
        return payment

    def _add_event(
        self,
        payment_id: str,
        event_type: PaymentEventType,
        from_status: Optional[PaymentStatus],
        to_status: PaymentStatus,
        detail: Optional[Dict[str, Any]] = None,
    ) -> PaymentEvent:
        sequence = (
            self.db.query(func.count(PaymentEvent.id))
            .where(PaymentEvent.payment_id == payment_id)
            .scalar()
        ) + 1
        event = PaymentEvent(
            payment_id=payment_id,
            sequence=sequence,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            detail=detail or {},
        )
        self.db.add(event)
        return event

    def _transition(
        self,
        payment: Payment,
        to_status: PaymentStatus,
        event_type: PaymentEventType,
        detail: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Payment:
        from_status = PaymentStatus(payment.status)
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(
                f"Payment {payment.id} cannot move from {from_status.value} to {to_status.value}"
            )

        def _apply():
            result = self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == from_status)
                .values(status=to_status, **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    f"Payment {payment.id} changed concurrently, expected {from_status.value}"
                )
            self._add_event(payment.id, event_type, from_status, to_status, detail)

        try:
            self._handle_db_operation(_apply)
        except InvalidTransitionError:
            self.db.rollback()
            raise
        finally:
            self.db.refresh(payment)

        logger.info(f"Payment {payment.id}: {from_status.value} -> {to_status.value} ({event_type.value})")
        return payment

    def mark_confirmed(self, payment: Payment, tx_hash: str) -> Payment:
        """
        pending -> confirmed.

        Confirming an already confirmed or completed payment with the same
        hash is a no-op.
        """
        if payment.status in (PaymentStatus.CONFIRMED, PaymentStatus.COMPLETED):
            if payment.chain_transaction_hash == tx_hash:
                return payment
            raise InvalidTransitionError(
                f"Payment {payment.id} is already confirmed by another transaction"
            )

        return self._transition(
            payment,
            PaymentStatus.CONFIRMED,
            PaymentEventType.CONFIRMED,
            {"chain_transaction_hash": tx_hash},
            chain_transaction_hash=tx_hash,
        )

    def mark_failed(self, payment: Payment, reason: str, kind: FailureKind) -> Payment:
        fields: Dict[str, Any] = {"failure_reason": reason, "failure_kind": kind}
        if kind == FailureKind.PAYOUT:
            # crypto leg settled, fiat leg did not
            fields["reconciliation_status"] = ReconciliationStatus.REQUIRED
            event_type = PaymentEventType.PAYOUT_FAILED
        else:
            event_type = PaymentEventType.CONFIRMATION_FAILED

        return self._transition(
            payment,
            PaymentStatus.FAILED,
            event_type,
            {"reason": reason, "kind": kind.value},
            **fields,
        )

    def mark_completed(self, payment: Payment, payout_id: str) -> Payment:
        return self._transition(
            payment,
            PaymentStatus.COMPLETED,
            PaymentEventType.PAYOUT_SUCCEEDED,
            {"payout_id": payout_id},
            payout_id=payout_id,
        )

    def record_payout(self, payment: Payment, payout_id: str) -> Payment:
        """Attach a payout attempt to the payment without changing its status."""

        def _record():
            payment.payout_id = payout_id
            self._add_event(
                payment.id,
                PaymentEventType.PAYOUT_INITIATED,
                PaymentStatus(payment.status),
                PaymentStatus(payment.status),
                {"payout_id": payout_id},
            )
            return payment

        self._handle_db_operation(_record)
        self.db.refresh(payment)
        return payment

    def set_reconciliation(
        self,
        payment: Payment,
        reconciliation_status: ReconciliationStatus,
        event_type: PaymentEventType,
        detail: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Payment:
        """Track manual remediation of a payout failure. Terminal status is left as is."""

        def _set():
            payment.reconciliation_status = reconciliation_status
            for key, value in fields.items():
                setattr(payment, key, value)
            self._add_event(
                payment.id,
                event_type,
                PaymentStatus(payment.status),
                PaymentStatus(payment.status),
                detail,
            )
            return payment

        self._handle_db_operation(_set)
        self.db.refresh(payment)
        logger.info(f"Payment {payment.id} reconciliation: {reconciliation_status.value}")
        return payment

    def get_events(self, payment_id: str) -> List[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .where(PaymentEvent.payment_id == payment_id)
            .order_by(PaymentEvent.sequence)
            .all()
        )

    def get_history(self, wallet_address: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Payments made from a wallet, newest first."""
        page = max(page, 1)
        limit = max(limit, 1)
        query = self.db.query(Payment).where(Payment.wallet_address == wallet_address)
        total = query.count()
        payments = (
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "payments": payments,
            "total": total,
            "page": page,
            "total_pages": math.ceil(total / limit),
        }

    def list_awaiting_payout(self) -> List[Payment]:
        return self.db.query(Payment).where(Payment.status == PaymentStatus.CONFIRMED).all()

    def list_unsettled(self) -> List[Payment]:
        """Payments whose crypto leg settled but whose payout failed and is not yet resolved."""
        return (
            self.db.query(Payment)
            .where(
                Payment.status == PaymentStatus.FAILED,
                Payment.failure_kind == FailureKind.PAYOUT,
                Payment.reconciliation_status.in_(
                    [ReconciliationStatus.REQUIRED, ReconciliationStatus.PAYOUT_RETRIED]
                ),
            )
            .all()
        )
