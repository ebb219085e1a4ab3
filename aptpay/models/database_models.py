from .enums import (
    FailureKind,
    PaymentEventType,
    PaymentStatus,
    PayoutStatus,
    ReconciliationStatus,
)
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    NUMERIC,
    String,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base
import cuid2


Base = declarative_base()


def _enum(enum_cls, **kwargs):
    return SQLEnum(
        enum_cls,
        values_callable=lambda obj: [e.value for e in obj],
        native_enum=False,
        **kwargs,
    )


class TimestampMixin:
    """Mixin for adding timestamp fields to models"""

    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Payment(TimestampMixin, Base):
    """One payment attempt. Rows are never deleted."""

    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=cuid2.cuid_wrapper())
    merchant_id = Column(String, nullable=False, index=True)

    # Counterparties
    wallet_address = Column(String(255), nullable=False, index=True)
    merchant_upi_id = Column(String(255), nullable=False)
    payee_name = Column(String(255), nullable=True)
    transaction_note = Column(String(255), nullable=True)

    # Amounts, rate is snapshotted at creation
    amount_fiat = Column(NUMERIC(15, 2), nullable=False)
    stablecoin_amount = Column(NUMERIC(20, 8), nullable=False)
    exchange_rate = Column(NUMERIC(15, 8), nullable=False)

    status = Column(
        _enum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )

    chain_transaction_hash = Column(String(255), nullable=True, unique=True)
    payout_id = Column(String(255), nullable=True)

    failure_reason = Column(Text, nullable=True)
    failure_kind = Column(_enum(FailureKind), nullable=True)
    reconciliation_status = Column(
        _enum(ReconciliationStatus),
        nullable=False,
        default=ReconciliationStatus.NOT_REQUIRED,
    )

    # Raw scanned QR string, kept for audit
    qr_payload = Column(Text, nullable=True)


class Payout(TimestampMixin, Base):
    """A single payout attempt to a merchant UPI address"""

    __tablename__ = "payouts"

    id = Column(String, primary_key=True, default=cuid2.cuid_wrapper())
    payment_id = Column(
        String, ForeignKey("payments.id"), nullable=False, index=True
    )
    payout_id = Column(String(255), nullable=False, unique=True, index=True)

    amount = Column(NUMERIC(15, 2), nullable=False)
    merchant_upi_id = Column(String(255), nullable=False)
    status = Column(_enum(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)

    provider_transaction_id = Column(String(255), nullable=True)
    failure_reason = Column(Text, nullable=True)
    provider_response = Column(JSON, nullable=False, default=dict)


class PaymentEvent(Base):
    """Append-only history of payment state transitions"""

    __tablename__ = "payment_events"
    __table_args__ = (UniqueConstraint("payment_id", "sequence"),)

    id = Column(String, primary_key=True, default=cuid2.cuid_wrapper())
    payment_id = Column(
        String, ForeignKey("payments.id"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    event_type = Column(_enum(PaymentEventType), nullable=False)
    from_status = Column(_enum(PaymentStatus), nullable=True)
    to_status = Column(_enum(PaymentStatus), nullable=False)
    detail = Column(JSON, nullable=False, default=dict)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
