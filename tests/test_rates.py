import asyncio
from decimal import Decimal

import aiohttp
import pytest

from aptpay.services.rates import (
    FALLBACK_FROM_FIAT,
    FALLBACK_TO_FIAT,
    CoinGeckoRateSource,
    ExchangeRateApiSource,
    RateConverter,
    RateSourceError,
)

from .conftest import FakeClock, FakeHttpSession, FakeRateSource


def make_converter(*sources, clock=None, ttl=60):
    return RateConverter(sources=list(sources), ttl=ttl, clock=clock or FakeClock())


@pytest.mark.anyio
async def test_rate_is_cached_within_ttl():
    clock = FakeClock()
    primary = FakeRateSource("primary", rate="83.50")

    async with make_converter(primary, clock=clock) as converter:
        assert await converter.get_rate("USDC", "INR") == Decimal("83.50")
        clock.advance(59)
        assert await converter.get_rate("USDC", "INR") == Decimal("83.50")

    assert primary.calls == 1


@pytest.mark.anyio
async def test_rate_is_refetched_after_ttl():
    clock = FakeClock()
    primary = FakeRateSource("primary", rate="83.50")

    async with make_converter(primary, clock=clock) as converter:
        await converter.get_rate("USDC", "INR")
        clock.advance(60)
        primary.rate = "84.10"
        assert await converter.get_rate("USDC", "INR") == Decimal("84.10")

    assert primary.calls == 2


@pytest.mark.anyio
async def test_secondary_source_used_when_primary_fails():
    primary = FakeRateSource("primary", error=aiohttp.ClientError("boom"))
    secondary = FakeRateSource("secondary", rate="83.20")

    async with make_converter(primary, secondary) as converter:
        assert await converter.get_rate("USDT", "INR") == Decimal("83.20")

    assert primary.calls == 1
    assert secondary.calls == 1


@pytest.mark.anyio
async def test_hardcoded_fallback_when_all_sources_fail():
    sources = [
        FakeRateSource("primary", error=RateSourceError("Rate limit reached")),
        FakeRateSource("secondary", error=asyncio.TimeoutError()),
    ]

    async with make_converter(*sources) as converter:
        assert await converter.get_rate("USDC", "INR") == FALLBACK_TO_FIAT == Decimal("84.0")
        assert await converter.get_rate("INR", "USDC") == FALLBACK_FROM_FIAT == Decimal("0.012")
        # fallback values are not cached
        assert converter.cache_stats()["size"] == 0


@pytest.mark.anyio
async def test_expired_rate_preferred_over_hardcoded_fallback():
    clock = FakeClock()
    primary = FakeRateSource("primary", rate="83.50")

    async with make_converter(primary, clock=clock) as converter:
        await converter.get_rate("USDC", "INR")
        clock.advance(600)
        primary.error = RateSourceError("Invalid response from price API")

        assert await converter.get_rate("USDC", "INR") == Decimal("83.50")


@pytest.mark.anyio
async def test_inverse_direction_uses_reciprocal():
    async with make_converter(FakeRateSource("primary", rate="80")) as converter:
        assert await converter.get_rate("inr", "usdc") == Decimal("0.0125")
        assert converter.cache_stats()["keys"] == ["INR-USDC"]


@pytest.mark.anyio
async def test_same_currency_is_identity():
    primary = FakeRateSource("primary", rate="80")

    async with make_converter(primary) as converter:
        assert await converter.get_rate("INR", "INR") == Decimal(1)

    assert primary.calls == 0


@pytest.mark.anyio
@pytest.mark.parametrize("pair", [("USDC", "USDT"), ("BTC", "INR"), ("INR", "EUR")])
async def test_unsupported_pair_raises(pair):
    async with make_converter(FakeRateSource("primary", rate="80")) as converter:
        with pytest.raises(ValueError):
            await converter.get_rate(*pair)


@pytest.mark.anyio
async def test_convert_with_current_rate():
    async with make_converter(FakeRateSource("primary", rate="84")) as converter:
        amount, rate = await converter.convert_with_current_rate(Decimal("2"), "USDC", "INR")

    assert rate == Decimal("84")
    assert amount == Decimal("168")


def test_convert():
    assert RateConverter.convert(Decimal("100"), Decimal("0.012")) == Decimal("1.200")


@pytest.mark.anyio
async def test_get_multiple_rates():
    async with make_converter(FakeRateSource("primary", rate="84")) as converter:
        rates = await converter.get_multiple_rates([("USDC", "INR"), ("usdt", "inr")])

    assert [(r.from_currency, r.to_currency, r.rate) for r in rates] == [
        ("USDC", "INR", Decimal("84")),
        ("USDT", "INR", Decimal("84")),
    ]


@pytest.mark.anyio
async def test_clear_cache_forces_refetch():
    primary = FakeRateSource("primary", rate="84")

    async with make_converter(primary) as converter:
        await converter.get_rate("USDC", "INR")
        await converter.get_rate("USDT", "INR")
        assert converter.cache_stats() == {"size": 2, "keys": ["USDC-INR", "USDT-INR"]}

        await converter.clear_cache()
        assert converter.cache_stats()["size"] == 0

        await converter.get_rate("USDC", "INR")

    assert primary.calls == 3


@pytest.mark.anyio
async def test_converters_do_not_share_cache():
    first = FakeRateSource("first", rate="84")
    second = FakeRateSource("second", rate="85")

    async with make_converter(first) as a, make_converter(second) as b:
        assert await a.get_rate("USDC", "INR") == Decimal("84")
        assert await b.get_rate("USDC", "INR") == Decimal("85")


@pytest.mark.anyio
async def test_concurrent_refreshes_are_coalesced():
    primary = FakeRateSource("primary", rate="84")

    async with make_converter(primary) as converter:
        rates = await asyncio.gather(*[converter.get_rate("USDC", "INR") for _ in range(5)])

    assert rates == [Decimal("84")] * 5
    assert primary.calls == 1


@pytest.mark.anyio
async def test_coingecko_source_reads_simple_price():
    session = FakeHttpSession({"usd-coin": {"inr": 83.9}})

    assert await CoinGeckoRateSource(base_url="http://cg").fetch(session, "USDC", "INR") == Decimal("83.9")
    assert session.requests == [("GET", "http://cg/simple/price")]


@pytest.mark.anyio
async def test_exchangerate_source_reads_usd_table():
    session = FakeHttpSession({"base": "USD", "rates": {"INR": 83.2, "EUR": 0.92}})

    assert await ExchangeRateApiSource(base_url="http://er").fetch(session, "USDT", "INR") == Decimal("83.2")


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [[], "oops", None, {"usd-coin": 84.1}, {"usd-coin": {"inr": "abc"}}, {"rates": [83.2]}, {"rates": {"INR": -1}}],
)
@pytest.mark.parametrize("source", [CoinGeckoRateSource(), ExchangeRateApiSource()])
async def test_sources_reject_malformed_bodies(source, body):
    with pytest.raises(RateSourceError):
        await source.fetch(FakeHttpSession(body), "USDC", "INR")


@pytest.mark.anyio
@pytest.mark.parametrize("body", [[], "oops", {"usd-coin": 84.1}])
async def test_malformed_bodies_fall_back_to_hardcoded_rate(body):
    converter = RateConverter(sources=[CoinGeckoRateSource(), ExchangeRateApiSource()], clock=FakeClock())
    converter.session = FakeHttpSession(body)

    async with converter:
        assert await converter.get_rate("USDC", "INR") == FALLBACK_TO_FIAT
        assert await converter.get_rate("INR", "USDC") == FALLBACK_FROM_FIAT


@pytest.mark.anyio
async def test_malformed_body_keeps_expired_rate():
    clock = FakeClock()
    converter = RateConverter(sources=[CoinGeckoRateSource(), ExchangeRateApiSource()], clock=clock)
    converter.session = FakeHttpSession({"usd-coin": {"inr": 83.5}})

    async with converter:
        assert await converter.get_rate("USDC", "INR") == Decimal("83.5")
        clock.advance(120)
        converter.session.body = ["not", "a", "quote"]
        assert await converter.get_rate("USDC", "INR") == Decimal("83.5")
