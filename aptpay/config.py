import os


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


GZIP_MINIMUM_SIZE = int(os.getenv("GZIP_MINIMUM_SIZE", "1000"))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./aptpay.db")

# Logging
LOG_DIR = os.getenv("LOG_DIR", "./logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_TO_FILE = _bool("LOG_TO_FILE")

# Aptos
APTOS_NODE_URL = os.getenv("APTOS_NODE_URL", "https://fullnode.testnet.aptoslabs.com/v1")
APTOS_ESCROW_ADDRESS = os.getenv("APTOS_ESCROW_ADDRESS", "")
APTOS_TX_LOOKUP_ATTEMPTS = int(os.getenv("APTOS_TX_LOOKUP_ATTEMPTS", "3"))

# Exchange rates
COINGECKO_API_URL = os.getenv("COINGECKO_API_URL", "https://api.coingecko.com/api/v3")
COINGECKO_API_KEY = os.getenv("COINGECKO_API_KEY")
EXCHANGE_RATE_API_URL = os.getenv("EXCHANGE_RATE_API_URL", "https://api.exchangerate-api.com/v4")
RATE_CACHE_TTL_SECONDS = int(os.getenv("RATE_CACHE_TTL_SECONDS", "60"))

# UPI payout provider
UPI_SANDBOX_URL = os.getenv("UPI_SANDBOX_URL", "https://sandbox.cashfree.com/pg")
UPI_API_KEY = os.getenv("UPI_API_KEY", "demo_api_key")
UPI_SECRET_KEY = os.getenv("UPI_SECRET_KEY", "demo_secret_key")
UPI_WEBHOOK_SECRET = os.getenv("UPI_WEBHOOK_SECRET", UPI_SECRET_KEY)
USE_UPI_MOCK = _bool("USE_UPI_MOCK")

PAYOUT_POLL_INTERVAL_SECONDS = float(os.getenv("PAYOUT_POLL_INTERVAL_SECONDS", "5"))
PAYOUT_POLLER_ENABLED = _bool("PAYOUT_POLLER_ENABLED", "true")

# QR parsing
UPI_PROVIDER_HANDLES = [
    h.strip().lower() for h in os.getenv("UPI_PROVIDER_HANDLES", "").split(",") if h.strip()
]
MAX_QR_PAYLOAD_LENGTH = int(os.getenv("MAX_QR_PAYLOAD_LENGTH", "4096"))
