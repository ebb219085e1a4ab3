from decimal import Decimal

import pytest

from aptpay.models.enums import (
    FailureKind,
    PaymentEventType,
    PaymentStatus,
    ReconciliationStatus,
)
from aptpay.services.ledger import (
    InvalidTransitionError,
    PaymentLedger,
    PaymentNotFoundError,
    compute_amounts,
)


def event_types(ledger, payment):
    return [e.event_type for e in ledger.get_events(payment.id)]


def test_create_persists_pending_payment(ledger, pending_payment):
    payment = ledger.get(pending_payment.id)

    assert payment.status == PaymentStatus.PENDING
    assert payment.amount_fiat == Decimal("150.50")
    assert payment.exchange_rate == Decimal("84")
    assert payment.reconciliation_status == ReconciliationStatus.NOT_REQUIRED
    assert payment.chain_transaction_hash is None
    assert event_types(ledger, payment) == [PaymentEventType.CREATED]


def test_get_or_raise_unknown_payment(ledger):
    with pytest.raises(PaymentNotFoundError) as exc:
        ledger.get_or_raise("missing")
    assert exc.value.status_code == 404


def test_confirm_then_complete(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")
    assert pending_payment.status == PaymentStatus.CONFIRMED
    assert pending_payment.chain_transaction_hash == "0xabc"
    assert ledger.find_by_transaction_hash("0xabc").id == pending_payment.id

    ledger.mark_completed(pending_payment, "PAYOUT_1")
    assert pending_payment.status == PaymentStatus.COMPLETED
    assert pending_payment.payout_id == "PAYOUT_1"

    events = ledger.get_events(pending_payment.id)
    assert [e.sequence for e in events] == [1, 2, 3]
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, PaymentStatus.PENDING),
        (PaymentStatus.PENDING, PaymentStatus.CONFIRMED),
        (PaymentStatus.CONFIRMED, PaymentStatus.COMPLETED),
    ]


def test_reconfirm_with_same_hash_is_noop(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")
    ledger.mark_confirmed(pending_payment, "0xabc")

    assert pending_payment.status == PaymentStatus.CONFIRMED
    assert event_types(ledger, pending_payment) == [PaymentEventType.CREATED, PaymentEventType.CONFIRMED]


def test_reconfirm_with_other_hash_is_rejected(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")

    with pytest.raises(InvalidTransitionError):
        ledger.mark_confirmed(pending_payment, "0xdef")
    assert pending_payment.chain_transaction_hash == "0xabc"


def test_pending_cannot_complete(ledger, pending_payment):
    with pytest.raises(InvalidTransitionError) as exc:
        ledger.mark_completed(pending_payment, "PAYOUT_1")

    assert exc.value.status_code == 409
    assert pending_payment.status == PaymentStatus.PENDING
    assert pending_payment.payout_id is None


@pytest.mark.parametrize("terminal", ["completed", "failed"])
def test_terminal_states_are_final(ledger, pending_payment, terminal):
    ledger.mark_confirmed(pending_payment, "0xabc")
    if terminal == "completed":
        ledger.mark_completed(pending_payment, "PAYOUT_1")
    else:
        ledger.mark_failed(pending_payment, "Payout failed", FailureKind.PAYOUT)

    with pytest.raises(InvalidTransitionError):
        ledger.mark_failed(pending_payment, "late failure", FailureKind.PAYOUT)
    with pytest.raises(InvalidTransitionError):
        ledger.mark_completed(pending_payment, "PAYOUT_2")


def test_stale_status_loses_race(session_factory, pending_payment):
    first = session_factory()
    second = session_factory()
    try:
        a = PaymentLedger(first)
        b = PaymentLedger(second)
        payment_a = a.get(pending_payment.id)
        payment_b = b.get(pending_payment.id)

        a.mark_confirmed(payment_a, "0xabc")
        # second session still believes the payment is pending
        with pytest.raises(InvalidTransitionError):
            b.mark_failed(payment_b, "Transaction not found", FailureKind.CONFIRMATION)

        assert payment_b.status == PaymentStatus.CONFIRMED
        assert len(b.get_events(pending_payment.id)) == 2
    finally:
        first.close()
        second.close()


def test_confirmation_failure(ledger, pending_payment):
    ledger.mark_failed(pending_payment, "Transaction failed on chain", FailureKind.CONFIRMATION)

    assert pending_payment.status == PaymentStatus.FAILED
    assert pending_payment.failure_kind == FailureKind.CONFIRMATION
    assert pending_payment.failure_reason == "Transaction failed on chain"
    assert pending_payment.reconciliation_status == ReconciliationStatus.NOT_REQUIRED
    assert ledger.list_unsettled() == []


def test_payout_failure_requires_reconciliation(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")
    assert [p.id for p in ledger.list_awaiting_payout()] == [pending_payment.id]

    ledger.mark_failed(pending_payment, "Beneficiary bank offline", FailureKind.PAYOUT)

    assert pending_payment.reconciliation_status == ReconciliationStatus.REQUIRED
    assert [p.id for p in ledger.list_unsettled()] == [pending_payment.id]
    assert ledger.list_awaiting_payout() == []
    assert event_types(ledger, pending_payment)[-1] == PaymentEventType.PAYOUT_FAILED


def test_set_reconciliation_keeps_status(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")
    ledger.mark_failed(pending_payment, "Payout failed", FailureKind.PAYOUT)

    ledger.set_reconciliation(
        pending_payment,
        ReconciliationStatus.REFUNDED,
        PaymentEventType.REFUNDED,
        {"note": "refunded on chain"},
    )

    assert pending_payment.status == PaymentStatus.FAILED
    assert pending_payment.reconciliation_status == ReconciliationStatus.REFUNDED
    assert ledger.list_unsettled() == []
    last = ledger.get_events(pending_payment.id)[-1]
    assert last.from_status == last.to_status == PaymentStatus.FAILED
    assert last.detail == {"note": "refunded on chain"}


def test_record_payout_keeps_status(ledger, pending_payment):
    ledger.mark_confirmed(pending_payment, "0xabc")
    ledger.record_payout(pending_payment, "PAYOUT_1")

    assert pending_payment.status == PaymentStatus.CONFIRMED
    assert pending_payment.payout_id == "PAYOUT_1"
    assert event_types(ledger, pending_payment)[-1] == PaymentEventType.PAYOUT_INITIATED


def test_history_is_paginated_per_wallet(ledger):
    for i in range(5):
        ledger.create(
            merchant_id="merchant-1",
            wallet_address="0xb0b",
            merchant_upi_id="shop@upi",
            amount_fiat=Decimal(10 + i),
            stablecoin_amount=Decimal("0.1"),
            exchange_rate=Decimal("84"),
        )
    ledger.create(
        merchant_id="merchant-1",
        wallet_address="0xother",
        merchant_upi_id="shop@upi",
        amount_fiat=Decimal("10"),
        stablecoin_amount=Decimal("0.1"),
        exchange_rate=Decimal("84"),
    )

    first = ledger.get_history("0xb0b", page=1, limit=2)
    last = ledger.get_history("0xb0b", page=3, limit=2)

    assert first["total"] == 5
    assert first["total_pages"] == 3
    assert len(first["payments"]) == 2
    assert len(last["payments"]) == 1
    assert ledger.get_history("0xnobody")["total_pages"] == 0


def test_compute_amounts_from_fiat():
    fiat, coin = compute_amounts(Decimal("84"), amount_fiat=Decimal("150.5"))

    assert fiat == Decimal("150.50")
    assert coin == Decimal("1.79166667")


def test_compute_amounts_from_stablecoin():
    assert compute_amounts(Decimal("84"), stablecoin_amount=Decimal("2")) == (
        Decimal("168.00"),
        Decimal("2.00000000"),
    )


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"amount_fiat": Decimal("1"), "stablecoin_amount": Decimal("1")},
        {"amount_fiat": Decimal("0")},
        {"stablecoin_amount": Decimal("-1")},
    ],
)
def test_compute_amounts_rejects_bad_input(kwargs):
    with pytest.raises(ValueError):
        compute_amounts(Decimal("84"), **kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount_fiat": Decimal("0.004")},
        {"stablecoin_amount": Decimal("0.000000001")},
        {"stablecoin_amount": Decimal("0.00000001")},
    ],
)
def test_compute_amounts_rejects_amounts_that_round_to_zero(kwargs):
    with pytest.raises(ValueError):
        compute_amounts(Decimal("84"), **kwargs)
