from typing import Callable, Iterable, List, NamedTuple, Optional, Sequence, Tuple
from decimal import Decimal, InvalidOperation
from datetime import datetime
import asyncio
import logging
import time
import uuid

import aiohttp
import pytz
from aiocache import Cache
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from aptpay.config import (
    COINGECKO_API_KEY,
    COINGECKO_API_URL,
    EXCHANGE_RATE_API_URL,
    RATE_CACHE_TTL_SECONDS,
)
from aptpay.models.schemas.rate import ExchangeRate
from aptpay.utils.logging import get_logger

logger = get_logger(__name__)
retry_logger = logging.getLogger(__name__)

# Stablecoins are quoted against fiat; the reverse direction is the inverse.
STABLECOINS = {"USDC": "usd-coin", "USDT": "tether"}
FIATS = {"INR"}

FALLBACK_TO_FIAT = Decimal("84.0")
FALLBACK_FROM_FIAT = Decimal("0.012")


class RateSourceError(Exception):
    """Raised when a rate source answers with something unusable"""

    pass


class RateUnavailableError(Exception):
    """Raised when every rate source failed"""

    pass


class RateEntry(NamedTuple):
    rate: Decimal
    observed_at: float
    source: str


def _to_rate(value) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise RateSourceError(f"Invalid rate value: {value!r}") from e
    if not rate.is_finite() or rate <= 0:
        raise RateSourceError(f"Invalid rate value: {value!r}")
    return rate


class CoinGeckoRateSource:
    """Primary source: CoinGecko simple price for the stablecoin in fiat."""

    name = "coingecko"

    def __init__(self, base_url: str = COINGECKO_API_URL, api_key: Optional[str] = COINGECKO_API_KEY):
        self.base_url = base_url.rstrip("/")
        self.headers = {"accept": "application/json"}
        if api_key:
            self.headers["x-cg-demo-api-key"] = api_key

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        retry=retry_if_exception_type(aiohttp.ClientError),
        before_sleep=before_sleep_log(retry_logger, logging.WARNING),
        reraise=True,
    )
    async def fetch(self, session: aiohttp.ClientSession, stablecoin: str, fiat: str) -> Decimal:
        coin_id = STABLECOINS[stablecoin]
        async with session.get(
            f"{self.base_url}/simple/price",
            params={"ids": coin_id, "vs_currencies": fiat.lower()},
            headers=self.headers,
        ) as response:
            if response.status == 429:
                raise RateSourceError("Rate limit reached")
            response.raise_for_status()
            data = await response.json()

        quote = data.get(coin_id) if isinstance(data, dict) else None
        price = quote.get(fiat.lower()) if isinstance(quote, dict) else None
        if price is None:
            raise RateSourceError("Invalid response from price API")
        return _to_rate(price)


class ExchangeRateApiSource:
    """Secondary source: USD/fiat from exchangerate-api, the stablecoin taken at its USD peg."""

    name = "exchangerate-api"

    def __init__(self, base_url: str = EXCHANGE_RATE_API_URL):
        self.base_url = base_url.rstrip("/")

    async def fetch(self, session: aiohttp.ClientSession, stablecoin: str, fiat: str) -> Decimal:
        async with session.get(f"{self.base_url}/latest/USD") as response:
            response.raise_for_status()
            data = await response.json()

        rates = data.get("rates") if isinstance(data, dict) else None
        rate = rates.get(fiat) if isinstance(rates, dict) else None
        if rate is None:
            raise RateSourceError("Invalid response from exchange rate API")
        return _to_rate(rate)


class RateConverter:
    """Stablecoin <-> fiat rates with a short-lived cache.

    On a miss the sources are tried in order. If all of them fail the last
    known rate is used even when expired, and without one a hardcoded
    constant. get_rate never raises for a supported pair.
    """

    def __init__(
        self,
        sources: Optional[Sequence] = None,
        ttl: float = RATE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 5,
    ):
        self.sources = list(sources) if sources is not None else [CoinGeckoRateSource(), ExchangeRateApiSource()]
        self.ttl = ttl
        self.clock = clock
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

        self.cache = Cache(Cache.MEMORY, namespace=f"rates:{uuid.uuid4().hex}")
        self._keys: set = set()
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        """Context manager entry."""
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup."""
        await self.close()

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    @staticmethod
    def _pair(from_currency: str, to_currency: str) -> Tuple[str, str, bool]:
        """Return (stablecoin, fiat, inverted) for a supported pair."""
        if from_currency in STABLECOINS and to_currency in FIATS:
            return from_currency, to_currency, False
        if from_currency in FIATS and to_currency in STABLECOINS:
            return to_currency, from_currency, True
        raise ValueError(f"Unsupported currency pair: {from_currency}/{to_currency}")

    def _is_fresh(self, entry: RateEntry) -> bool:
        return self.clock() - entry.observed_at < self.ttl

    async def _fetch(self, stablecoin: str, fiat: str) -> Tuple[Decimal, str]:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)

        for source in self.sources:
            try:
                return await source.fetch(self.session, stablecoin, fiat), source.name
            except (aiohttp.ClientError, asyncio.TimeoutError, RateSourceError, ValueError) as e:
                logger.error(f"Error fetching {stablecoin}/{fiat} rate from {source.name}: {e}")

        raise RateUnavailableError(f"No rate source available for {stablecoin}/{fiat}")

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """
        Get the exchange rate for a currency pair.

        Args:
            from_currency: e.g. "USDC"
            to_currency: e.g. "INR"

        Raises:
            ValueError: the pair is not supported
        """
        from_currency, to_currency = from_currency.upper(), to_currency.upper()
        if from_currency == to_currency:
            return Decimal(1)

        stablecoin, fiat, inverted = self._pair(from_currency, to_currency)
        key = f"{from_currency}-{to_currency}"

        cached: Optional[RateEntry] = await self.cache.get(key)
        if cached and self._is_fresh(cached):
            return cached.rate

        async with self._lock:
            # another caller may have refreshed it while we waited
            cached = await self.cache.get(key)
            if cached and self._is_fresh(cached):
                return cached.rate

            try:
                base_rate, source = await self._fetch(stablecoin, fiat)
            except RateUnavailableError as e:
                logger.error(str(e))
                if cached:
                    logger.warning(f"Using expired cached rate for {key}")
                    return cached.rate
                logger.warning(f"Using fallback exchange rate for {key}")
                return FALLBACK_FROM_FIAT if inverted else FALLBACK_TO_FIAT

            rate = Decimal(1) / base_rate if inverted else base_rate
            await self.cache.set(key, RateEntry(rate=rate, observed_at=self.clock(), source=source))
            self._keys.add(key)
            return rate

    async def get_multiple_rates(self, pairs: Iterable[Tuple[str, str]]) -> List[ExchangeRate]:
        pairs = list(pairs)
        rates = await asyncio.gather(*[self.get_rate(f, t) for f, t in pairs])
        now = datetime.now(pytz.utc)
        return [
            ExchangeRate(from_currency=f.upper(), to_currency=t.upper(), rate=rate, timestamp=now)
            for (f, t), rate in zip(pairs, rates)
        ]

    @staticmethod
    def convert(amount: Decimal, rate: Decimal) -> Decimal:
        return amount * rate

    async def convert_with_current_rate(
        self, amount: Decimal, from_currency: str, to_currency: str
    ) -> Tuple[Decimal, Decimal]:
        rate = await self.get_rate(from_currency, to_currency)
        return self.convert(amount, rate), rate

    async def clear_cache(self) -> None:
        await self.cache.clear(namespace=self.cache.namespace)
        self._keys.clear()

    def cache_stats(self) -> dict:
        return {"size": len(self._keys), "keys": sorted(self._keys)}
