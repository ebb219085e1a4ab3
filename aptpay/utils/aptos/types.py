from typing import Any, Dict, NamedTuple, Optional


class TransactionLookupError(Exception):
    """Raised when the fullnode cannot be reached or answers with an error"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.message = message
        self.tx_hash = tx_hash
        super().__init__(self.message)


class TransactionNotFoundError(TransactionLookupError):
    pass


class TransactionPendingError(TransactionLookupError):
    pass


class InvalidTransactionError(Exception):
    """The transaction exists but cannot be accepted as proof of payment"""

    pass


class TransactionInfo(NamedTuple):
    hash: str
    success: bool
    pending: bool
    sender: Optional[str]
    vm_status: Optional[str]
    payload: Dict[str, Any]
