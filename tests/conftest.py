"""Shared fixtures: in-memory database and fake external capabilities.

The chain client, payout provider and rate sources are replaced by small
fakes so tests never touch the network.
"""
from decimal import Decimal
from typing import Dict, List, Optional

import aiohttp
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from aptpay.models.database_models import Base
from aptpay.models.enums import PayoutStatus
from aptpay.services.ledger import PaymentLedger
from aptpay.services.payout import PayoutCoordinator
from aptpay.services.upi import PayoutProviderError, PayoutResult, PayoutStatusInfo
from aptpay.utils.aptos.types import TransactionInfo, TransactionLookupError

ESCROW_ADDRESS = "0x00e5c0"
WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def escrow_transfer(tx_hash: str, success: bool = True, to: str = "0xe5c0") -> TransactionInfo:
    return TransactionInfo(
        hash=tx_hash,
        success=success,
        pending=False,
        sender="0xa11ce",
        vm_status="Executed successfully" if success else "Move abort",
        payload={
            "function": "0x1::primary_fungible_store::transfer",
            "type_arguments": ["0x1::fungible_asset::Metadata"],
            "arguments": ["0x69091fbab5f7d635ee7ac5098cf0c1efbe31d68fec0f2cd565e8d168daf52832", to, "2000000"],
        },
    )


class FakeChainClient:
    def __init__(self, transactions: Optional[Dict[str, TransactionInfo]] = None, escrow_address: str = ESCROW_ADDRESS):
        self.escrow_address = escrow_address
        self.transactions = transactions or {}
        self.lookup_error = False
        self.lookups: List[str] = []

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        self.lookups.append(tx_hash)
        if self.lookup_error:
            raise TransactionLookupError("Fullnode unreachable", tx_hash)
        return self.transactions.get(tx_hash)


class FakePayoutClient:
    def __init__(
        self,
        initiate_status: PayoutStatus = PayoutStatus.PENDING,
        poll_status: PayoutStatus = PayoutStatus.SUCCESS,
        fail_on_initiate: bool = False,
    ):
        self.initiate_status = initiate_status
        self.poll_status = poll_status
        self.fail_on_initiate = fail_on_initiate
        self.initiated: List[dict] = []
        self.polled: List[str] = []

    async def initiate_payout(
        self,
        payout_id: str,
        payment_id: str,
        merchant_upi_id: str,
        amount: Decimal,
        currency: str = "INR",
        beneficiary_name: Optional[str] = None,
    ) -> PayoutResult:
        if self.fail_on_initiate:
            raise PayoutProviderError("Payout API error: 503")
        self.initiated.append(
            {"payout_id": payout_id, "payment_id": payment_id, "upi_id": merchant_upi_id, "amount": amount}
        )
        failed = self.initiate_status == PayoutStatus.FAILED
        return PayoutResult(
            payout_id=payout_id,
            status=self.initiate_status,
            message="Insufficient balance" if failed else "Payout initiated",
            transaction_id=None if failed else f"txn_{payout_id[:8]}",
            raw={"status": self.initiate_status.value},
        )

    async def get_payout_status(self, payout_id: str) -> Optional[PayoutStatusInfo]:
        self.polled.append(payout_id)
        return PayoutStatusInfo(
            payout_id=payout_id,
            status=self.poll_status,
            amount=None,
            merchant_upi_id=None,
            transaction_id=f"txn_{payout_id[:8]}",
            failure_reason="Beneficiary bank offline" if self.poll_status == PayoutStatus.FAILED else None,
            raw={"status": self.poll_status.value},
        )

    async def verify_beneficiary(self, upi_id: str) -> Optional[dict]:
        return {"upi_id": upi_id, "name": "Shop", "verified": True}


class FakeResponse:
    def __init__(self, body=None, status: int = 200):
        self.body = body
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientError(f"HTTP {self.status}")

    async def json(self):
        return self.body

    async def text(self):
        return str(self.body)


class FakeHttpSession:
    """Stands in for aiohttp.ClientSession, answering every request with the same body."""

    def __init__(self, body=None, status: int = 200):
        self.body = body
        self.status = status
        self.closed = False
        self.requests: List[tuple] = []

    def get(self, url, **kwargs):
        self.requests.append(("GET", url))
        return FakeResponse(self.body, self.status)

    def post(self, url, **kwargs):
        self.requests.append(("POST", url))
        return FakeResponse(self.body, self.status)

    async def close(self):
        self.closed = True


class FakeRateSource:
    def __init__(self, name: str, rate=None, error: Optional[Exception] = None):
        self.name = name
        self.rate = rate
        self.error = error
        self.calls = 0

    async def fetch(self, session, stablecoin: str, fiat: str) -> Decimal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Decimal(str(self.rate))


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def payout_client():
    return FakePayoutClient()


@pytest.fixture
def ledger(db):
    return PaymentLedger(db)


@pytest.fixture
def coordinator(db, chain_client, payout_client):
    return PayoutCoordinator(
        db,
        chain_client=chain_client,
        payout_client=payout_client,
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def pending_payment(ledger):
    return ledger.create(
        merchant_id="merchant-1",
        wallet_address="0xa11ce",
        merchant_upi_id="shop@upi",
        amount_fiat=Decimal("150.50"),
        stablecoin_amount=Decimal("1.79166667"),
        exchange_rate=Decimal("84"),
        payee_name="Shop",
        transaction_note="Lunch",
        qr_payload="upi://pay?pa=shop@upi&pn=Shop&am=150.50&tn=Lunch",
    )
