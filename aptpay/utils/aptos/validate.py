import re
from typing import Any, Optional

from .types import InvalidTransactionError, TransactionInfo

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{1,64}$")


def normalize_address(address: str) -> str:
    """Canonical form of an Aptos account address: lowercase hex, no 0x, no leading zeros."""
    value = address.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value.lstrip("0") or "0"


def references_address(payload: Any, address: str) -> bool:
    """True when any address-shaped value inside the payload is the given address."""
    target = normalize_address(address)

    if isinstance(payload, str):
        return bool(_ADDRESS.match(payload)) and normalize_address(payload) == target
    if isinstance(payload, dict):
        return any(references_address(v, address) for v in payload.values())
    if isinstance(payload, (list, tuple)):
        return any(references_address(v, address) for v in payload)
    return False


def validate_transaction(tx: Optional[TransactionInfo], escrow_address: str) -> TransactionInfo:
    """Accept a transaction as proof of payment only if it exists, succeeded and pays the escrow."""
    if tx is None:
        raise InvalidTransactionError("Transaction not found on chain")
    if tx.pending:
        raise InvalidTransactionError("Transaction not yet committed")
    if not tx.success:
        raise InvalidTransactionError(f"Transaction failed on chain: {tx.vm_status}")
    if not escrow_address:
        raise InvalidTransactionError("Escrow address is not configured")
    if not references_address(tx.payload, escrow_address):
        raise InvalidTransactionError("Transaction does not pay the escrow address")
    return tx
