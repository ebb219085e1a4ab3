from functools import partial
from typing import Iterable, List, Optional, Tuple

from aptpay.config import MAX_QR_PAYLOAD_LENGTH, UPI_PROVIDER_HANDLES
from aptpay.models.enums import QRDialect
from aptpay.utils.logging import get_logger

from .dialects import (
    DEFAULT_PROVIDER_HANDLES,
    matches_heuristic_form,
    matches_json_form,
    matches_url_form,
    parse_heuristic_form,
    parse_json_form,
    parse_url_form,
)
from .types import DialectMatcher, ParsedPayload, PaymentIntent

logger = get_logger(__name__)


class UpiQRParser:
    """Turns a raw decoded QR string into a PaymentIntent.

    Dialects are tried in a fixed order (URL, bare VPA text, JSON) and the
    first one whose matcher accepts the payload decides the outcome, even
    when its parser then finds no payee address.
    """

    def __init__(
        self,
        provider_handles: Optional[Iterable[str]] = None,
        max_length: int = MAX_QR_PAYLOAD_LENGTH,
    ):
        handles: Tuple[str, ...] = tuple(
            dict.fromkeys(
                h.lower()
                for h in (
                    provider_handles
                    if provider_handles is not None
                    else (*DEFAULT_PROVIDER_HANDLES, *UPI_PROVIDER_HANDLES)
                )
            )
        )
        self.provider_handles = handles
        self.max_length = max_length
        self.matchers: List[DialectMatcher] = [
            DialectMatcher(QRDialect.URL, matches_url_form, parse_url_form),
            DialectMatcher(
                QRDialect.HEURISTIC,
                partial(matches_heuristic_form, provider_handles=handles),
                parse_heuristic_form,
            ),
            DialectMatcher(QRDialect.JSON, matches_json_form, parse_json_form),
        ]

    def classify(self, raw: str) -> ParsedPayload:
        if not isinstance(raw, str) or not raw.strip():
            return ParsedPayload(QRDialect.UNRECOGNIZED, None)

        if len(raw) > self.max_length:
            logger.debug(f"Rejecting QR payload of length {len(raw)}")
            return ParsedPayload(QRDialect.UNRECOGNIZED, None)

        for matcher in self.matchers:
            try:
                matched = matcher.matches(raw)
            except Exception as e:
                logger.error(f"Error matching {matcher.dialect.value} QR payload: {e}")
                matched = False
            if not matched:
                continue

            try:
                intent = matcher.parse(raw)
            except Exception as e:
                logger.error(f"Error parsing {matcher.dialect.value} QR payload: {e}")
                intent = None

            if intent is None:
                logger.debug(f"{matcher.dialect.value} QR payload has no payee address: {raw[:100]!r}")
            return ParsedPayload(matcher.dialect, intent)

        logger.debug(f"Not a UPI QR payload: {raw[:100]!r}")
        return ParsedPayload(QRDialect.UNRECOGNIZED, None)

    def parse(self, raw: str) -> Optional[PaymentIntent]:
        """Parse a payload, returning None when it is not a usable UPI QR code."""
        return self.classify(raw).intent


default_parser = UpiQRParser()


def parse_upi_qr(raw: str) -> Optional[PaymentIntent]:
    return default_parser.parse(raw)
