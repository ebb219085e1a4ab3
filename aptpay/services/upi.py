from typing import Any, Dict, NamedTuple, Optional
from decimal import Decimal, InvalidOperation
import asyncio

import aiohttp

from aptpay.config import UPI_API_KEY, UPI_SANDBOX_URL, UPI_SECRET_KEY, USE_UPI_MOCK
from aptpay.models.enums import PayoutStatus
from aptpay.utils.logging import get_logger

logger = get_logger(__name__)

_FAILED_STATUSES = {"FAILED", "FAILURE", "REJECTED", "REVERSED", "CANCELLED"}
_SUCCESS_STATUSES = {"SUCCESS", "SUCCEEDED", "COMPLETED"}


class PayoutProviderError(Exception):
    """Raised when the payout provider cannot be reached or rejects a request"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(self.message)


class PayoutResult(NamedTuple):
    payout_id: str
    status: PayoutStatus
    message: str
    transaction_id: Optional[str]
    raw: Dict[str, Any]


class PayoutStatusInfo(NamedTuple):
    payout_id: str
    status: PayoutStatus
    amount: Optional[Decimal]
    merchant_upi_id: Optional[str]
    transaction_id: Optional[str]
    failure_reason: Optional[str]
    raw: Dict[str, Any]


def normalize_payout_status(value: Optional[str]) -> PayoutStatus:
    """Map provider status strings onto PENDING / SUCCESS / FAILED."""
    status = str(value or "").strip().upper()
    if status in _SUCCESS_STATUSES:
        return PayoutStatus.SUCCESS
    if status in _FAILED_STATUSES:
        return PayoutStatus.FAILED
    return PayoutStatus.PENDING


class UpiPayoutClient:
    """Client for the UPI payout provider (Cashfree-style REST API)."""

    def __init__(
        self,
        base_url: str = UPI_SANDBOX_URL,
        api_key: str = UPI_API_KEY,
        secret_key: str = UPI_SECRET_KEY,
        use_mock: bool = USE_UPI_MOCK,
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.use_mock = use_mock
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "X-Client-Secret": secret_key,
        }
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Context manager entry."""
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup."""
        await self.close()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self.session

    async def initiate_payout(
        self,
        payout_id: str,
        payment_id: str,
        merchant_upi_id: str,
        amount: Decimal,
        currency: str = "INR",
        beneficiary_name: Optional[str] = None,
    ) -> PayoutResult:
        """
        Ask the provider to send fiat to a merchant UPI address.

        Raises:
            PayoutProviderError: network failure or error response
        """
        if self.use_mock:
            return PayoutResult(
                payout_id=payout_id,
                status=PayoutStatus.PENDING,
                message="Mock payout initiated successfully",
                transaction_id=f"mock_txn_{payout_id[:8]}",
                raw={"mock": True},
            )

        payout_data = {
            "payout_id": payout_id,
            "amount": str(amount),
            "currency": currency,
            "beneficiary": {
                "upi_id": merchant_upi_id,
                "name": beneficiary_name or "Merchant",
            },
            "purpose": "PAYMENT",
            "remarks": f"AptPay payment for transaction {payment_id}",
        }

        try:
            async with self._get_session().post(f"{self.base_url}/payouts", json=payout_data) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise PayoutProviderError(f"Payout API error: {response.status} {text}", response.status)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Error initiating UPI payout {payout_id}: {e}")
            raise PayoutProviderError(f"Failed to initiate payout: {e}") from e

        if not isinstance(data, dict):
            raise PayoutProviderError("Invalid response from payout API")

        return PayoutResult(
            payout_id=payout_id,
            status=normalize_payout_status(data.get("status")),
            message=data.get("message") or "Payout initiated",
            transaction_id=data.get("transaction_id"),
            raw=data,
        )

    async def get_payout_status(self, payout_id: str) -> Optional[PayoutStatusInfo]:
        """
        Poll the provider for a payout's status.

        Returns None when the provider does not know the payout.

        Raises:
            PayoutProviderError: network failure or error response
        """
        if self.use_mock:
            return PayoutStatusInfo(
                payout_id=payout_id,
                status=PayoutStatus.SUCCESS,
                amount=None,
                merchant_upi_id=None,
                transaction_id=f"mock_txn_{payout_id[:8]}",
                failure_reason=None,
                raw={"mock": True},
            )

        try:
            async with self._get_session().get(f"{self.base_url}/payouts/{payout_id}") as response:
                if response.status == 404:
                    return None
                if response.status >= 400:
                    raise PayoutProviderError(f"Payout API error: {response.status}", response.status)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Error getting payout status {payout_id}: {e}")
            raise PayoutProviderError(f"Failed to get payout status: {e}") from e

        if not isinstance(data, dict):
            raise PayoutProviderError("Invalid response from payout API")

        amount = data.get("amount")
        try:
            amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            amount = None
        beneficiary = data.get("beneficiary")
        return PayoutStatusInfo(
            payout_id=payout_id,
            status=normalize_payout_status(data.get("status")),
            amount=amount,
            merchant_upi_id=beneficiary.get("upi_id") if isinstance(beneficiary, dict) else None,
            transaction_id=data.get("transaction_id"),
            failure_reason=data.get("failure_reason"),
            raw=data,
        )

    async def verify_beneficiary(self, upi_id: str) -> Optional[Dict[str, Any]]:
        """Check a UPI address with the provider and return its registered details."""
        if self.use_mock:
            return {"upi_id": upi_id, "name": "Mock Merchant", "verified": True}

        try:
            async with self._get_session().post(
                f"{self.base_url}/verification/upi", json={"upi_id": upi_id}
            ) as response:
                if response.status >= 400:
                    logger.warning(f"UPI verification failed for {upi_id}: {response.status}")
                    return None
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error(f"Error verifying UPI ID {upi_id}: {e}")
            return None

        return data if isinstance(data, dict) else None
