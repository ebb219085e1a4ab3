import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from aptpay.config import APTOS_ESCROW_ADDRESS, APTOS_NODE_URL, APTOS_TX_LOOKUP_ATTEMPTS
from aptpay.utils.logging import get_logger

from .types import (
    TransactionInfo,
    TransactionLookupError,
    TransactionNotFoundError,
    TransactionPendingError,
)

logger = get_logger(__name__)
retry_logger = logging.getLogger(__name__)

HEADERS = {"accept": "application/json"}


def transaction_from_response(data: Dict[str, Any]) -> TransactionInfo:
    """Build a TransactionInfo from a fullnode /transactions/by_hash response."""
    pending = data.get("type") == "pending_transaction"
    return TransactionInfo(
        hash=data.get("hash", ""),
        success=bool(data.get("success")) and not pending,
        pending=pending,
        sender=data.get("sender"),
        vm_status=data.get("vm_status"),
        payload=data.get("payload") or {},
    )


class AptosClient:
    """Read-only client for the Aptos fullnode REST API."""

    def __init__(
        self,
        node_url: str = APTOS_NODE_URL,
        escrow_address: str = APTOS_ESCROW_ADDRESS,
        timeout: float = 10,
    ):
        self.node_url = node_url.rstrip("/")
        self.escrow_address = escrow_address
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Context manager entry."""
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(headers=HEADERS, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup."""
        await self.close()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    @retry(
        stop=stop_after_attempt(APTOS_TX_LOOKUP_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(
            (TransactionNotFoundError, TransactionPendingError, aiohttp.ClientError, asyncio.TimeoutError)
        ),
        before_sleep=before_sleep_log(retry_logger, logging.WARNING),
        reraise=True,
    )
    async def _fetch_transaction(self, tx_hash: str) -> Dict[str, Any]:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(headers=HEADERS, timeout=self.timeout)

        async with self.session.get(f"{self.node_url}/transactions/by_hash/{tx_hash}") as response:
            if response.status == 404:
                raise TransactionNotFoundError("Transaction not found", tx_hash)
            elif response.status >= 400:
                raise TransactionLookupError(
                    f"Fullnode error: {response.status} {await response.text()}", tx_hash
                )

            data = await response.json()
            if data.get("type") == "pending_transaction":
                raise TransactionPendingError("Transaction still pending", tx_hash)
            return data

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionInfo]:
        """
        Look up a transaction by hash.

        Args:
            tx_hash: Transaction hash reported by the wallet

        Returns:
            TransactionInfo, or None if the fullnode never saw the hash.
            A transaction still pending after all retries comes back with
            pending=True.

        Raises:
            TransactionLookupError: the fullnode is unreachable or erroring
        """
        try:
            data = await self._fetch_transaction(tx_hash)
        except TransactionNotFoundError:
            logger.warning(f"Transaction {tx_hash} not found")
            return None
        except TransactionPendingError:
            logger.warning(f"Transaction {tx_hash} still pending")
            return TransactionInfo(
                hash=tx_hash, success=False, pending=True, sender=None, vm_status=None, payload={}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error fetching transaction {tx_hash}: {e}")
            raise TransactionLookupError(f"Failed to fetch transaction: {e}", tx_hash) from e

        return transaction_from_response(data)
