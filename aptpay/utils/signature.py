import hashlib
import hmac
from typing import Optional, Union

from aptpay.utils.logging import get_logger

logger = get_logger(__name__)


def _to_bytes(payload: Union[str, bytes]) -> bytes:
    if isinstance(payload, str):
        return payload.encode()
    return payload


def sign_payload(payload: Union[str, bytes], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode(), _to_bytes(payload), hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: Union[str, bytes], signature: Optional[str], secret: str) -> bool:
    """
    Check a payout provider webhook signature.

    The signature must be computed over the exact raw body, before any JSON
    decoding. An optional "sha256=" prefix is accepted.
    """
    if not signature or not secret:
        logger.warning("Webhook signature or secret missing")
        return False

    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = sign_payload(payload, secret)
    return hmac.compare_digest(expected_signature, signature.lower())
