"""Parsers for the UPI QR payload dialects seen in the wild.

Every function here is pure: no I/O, no randomness. Matchers decide whether
a payload looks like a dialect, parsers extract a PaymentIntent from it or
return None when the payload carries no payee address.
"""
import json
import re
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import parse_qsl, urlsplit

from .types import PaymentIntent, UNKNOWN_MERCHANT

DEFAULT_PROVIDER_HANDLES: Tuple[str, ...] = (
    "paytm",
    "phonepe",
    "gpay",
    "ybl",
    "okaxis",
    "oksbi",
    "okhdfcbank",
    "okicici",
    "ibl",
    "axl",
)

_URL_FORM = re.compile(r"^upi://pay(?=[/?#]|$)", re.IGNORECASE)
_EMBEDDED_URL = re.compile(r"upi://pay\?\S*", re.IGNORECASE)
_SCHEME = re.compile(r"^upi:", re.IGNORECASE)

_VPA = re.compile(r"[A-Za-z0-9._\-]+@[A-Za-z0-9._\-]+")
_NUMBER = re.compile(r"\d+(\.\d+)?")
_DIGIT = re.compile(r"\d")
_AMOUNT_TOKEN = re.compile(r"amount|(?<![a-z])rs(?![a-z])|(?<![a-z])inr(?![a-z])|₹", re.IGNORECASE)

JSON_ADDRESS_KEYS = ("upi", "vpa", "payeeAddress")
JSON_NAME_KEYS = ("name", "merchantName", "payeeName")
JSON_AMOUNT_KEYS = ("amount", "am")
JSON_NOTE_KEYS = ("note", "tn", "description")
JSON_MERCHANT_CODE_KEYS = ("merchantCode", "mc", "mid")


# --- URL form: upi://pay?pa=...&pn=...

def _extract_url(raw: str) -> Optional[str]:
    candidate = raw.strip()
    if _URL_FORM.match(candidate):
        return candidate

    embedded = _EMBEDDED_URL.search(candidate)
    if embedded:
        return embedded.group(0)
    return None


def matches_url_form(raw: str) -> bool:
    return _extract_url(raw) is not None


def _first_param(params: Dict[str, str], *keys: str) -> str:
    for key in keys:
        value = params.get(key)
        if value:
            return value
    return ""


def parse_url_form(raw: str) -> Optional[PaymentIntent]:
    url = _extract_url(raw)
    if url is None:
        return None

    # Swap the scheme so urlsplit treats it like any hierarchical URL.
    # The query string itself is untouched.
    query = urlsplit(_SCHEME.sub("https:", url, count=1)).query

    params: Dict[str, str] = {}
    for key, value in parse_qsl(query, keep_blank_values=True):
        params.setdefault(key, value)

    payee_address = params.get("pa", "")
    if not payee_address:
        return None

    return PaymentIntent(
        payee_address=payee_address,
        payee_name=params.get("pn") or UNKNOWN_MERCHANT,
        amount=_first_param(params, "am", "amount"),
        transaction_note=_first_param(params, "tn", "note"),
        merchant_code=_first_param(params, "mc", "mid"),
        transaction_ref=_first_param(params, "tr", "tid"),
        raw_payload=raw,
    )


# --- Bare VPA text: "shop@paytm\nTea Shop\nAmount: Rs 20"

def matches_heuristic_form(raw: str, provider_handles: Iterable[str] = DEFAULT_PROVIDER_HANDLES) -> bool:
    if "@" not in raw or raw.lstrip().startswith("{"):
        return False
    lowered = raw.lower()
    return any(handle in lowered for handle in provider_handles)


def parse_heuristic_form(raw: str) -> Optional[PaymentIntent]:
    payee_address = ""
    payee_name = ""
    amount = ""

    for line in (l.strip() for l in raw.splitlines()):
        if not line:
            continue

        if "@" in line:
            if not payee_address:
                vpa = _VPA.search(line)
                payee_address = vpa.group(0) if vpa else line
            continue

        if _AMOUNT_TOKEN.search(line):
            number = _NUMBER.search(line)
            if number and not amount:
                amount = number.group(0)
            continue

        if not payee_name and len(line) > 3 and not _DIGIT.search(line):
            payee_name = line

    if not payee_address:
        return None

    return PaymentIntent(
        payee_address=payee_address,
        payee_name=payee_name or UNKNOWN_MERCHANT,
        amount=amount,
        raw_payload=raw,
    )


# --- JSON merchant objects: {"vpa": "a@b", "amount": 50}

def _load_json_object(raw: str) -> Optional[Dict[str, Any]]:
    if not raw.lstrip().startswith("{"):
        return None
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None


def _json_text(value: Any) -> str:
    """Coerce a JSON scalar to text. Falsy and non-scalar values count as absent."""
    if value is None or isinstance(value, (bool, dict, list)):
        return ""
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return ""
        if value.is_integer():
            value = int(value)
    if isinstance(value, (int, float)) and value == 0:
        return ""
    return str(value)


def _first_key(data: Dict[str, Any], keys: Iterable[str]) -> str:
    for key in keys:
        text = _json_text(data.get(key))
        if text:
            return text
    return ""


def matches_json_form(raw: str) -> bool:
    data = _load_json_object(raw)
    return data is not None and any(key in data for key in JSON_ADDRESS_KEYS)


def parse_json_form(raw: str) -> Optional[PaymentIntent]:
    data = _load_json_object(raw)
    if data is None:
        return None

    payee_address = ""
    for key in JSON_ADDRESS_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            payee_address = value.strip()
            break

    if not payee_address:
        return None

    # No JSON key maps to transaction_ref.
    return PaymentIntent(
        payee_address=payee_address,
        payee_name=_first_key(data, JSON_NAME_KEYS) or UNKNOWN_MERCHANT,
        amount=_first_key(data, JSON_AMOUNT_KEYS),
        transaction_note=_first_key(data, JSON_NOTE_KEYS),
        merchant_code=_first_key(data, JSON_MERCHANT_CODE_KEYS),
        raw_payload=raw,
    )
