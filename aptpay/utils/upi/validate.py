from typing import Union

from .types import AMOUNT_PATTERN, PaymentIntent, Rejection, RejectionReason


def validate_intent(
    intent: PaymentIntent, strict_amount: bool = False
) -> Union[PaymentIntent, Rejection]:
    """
    Re-check a parsed intent before it is shown to the user.

    A missing payee address is always a rejection. A non-numeric amount is
    passed through unless strict_amount is set; amount entry validates it
    later.
    """
    if not intent.payee_address or not intent.payee_address.strip():
        return Rejection(RejectionReason.MISSING_PAYEE_ADDRESS, "Payee address is required")

    if strict_amount and intent.amount and not AMOUNT_PATTERN.match(intent.amount):
        return Rejection(RejectionReason.INVALID_AMOUNT, f"Invalid amount: {intent.amount!r}")

    return intent
