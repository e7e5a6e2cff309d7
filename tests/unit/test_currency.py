"""Contract tests for exchange rate providers.

Tests CBR XML parsing, markup application, caching and the static fallback.
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import aiohttp
import pytest

from cargo_bot.config import CacheConfig, CurrencyConfig
from cargo_bot.errors import ExchangeRateUnavailable
from cargo_bot.services.currency import (
    CbrRateProvider,
    StaticRateProvider,
    build_rate_provider,
    parse_cbr_rates,
)

CBR_XML = """<?xml version="1.0" encoding="windows-1251"?>
<ValCurs Date="19.10.2026" name="Foreign Currency Market">
    <Valute ID="R01235">
        <NumCode>840</NumCode>
        <CharCode>USD</CharCode>
        <Nominal>1</Nominal>
        <Name>Доллар США</Name>
        <Value>90,0000</Value>
    </Valute>
    <Valute ID="R01375">
        <NumCode>156</NumCode>
        <CharCode>CNY</CharCode>
        <Nominal>10</Nominal>
        <Name>Китайских юаней</Name>
        <Value>125,5000</Value>
    </Valute>
    <Valute ID="R00000">
        <CharCode>XXX</CharCode>
    </Valute>
</ValCurs>
""".encode("cp1251")


class TestParseCbrRates:
    def test_parses_rates_per_unit(self):
        rates = parse_cbr_rates(CBR_XML, Decimal("0"))
        assert rates == {"USD": Decimal("90.0000"), "CNY": Decimal("12.5500")}

    def test_applies_markup(self):
        rates = parse_cbr_rates(CBR_XML, Decimal("5"))
        assert rates["USD"] == Decimal("94.5000")
        assert rates["CNY"] == Decimal("13.1775")


class TestStaticRateProvider:
    @pytest.mark.asyncio
    async def test_known_currency(self):
        provider = StaticRateProvider({"usd": Decimal("90")})
        assert await provider.rate("USD") == Decimal("90")
        assert await provider.rate("rub") == Decimal("1")

    @pytest.mark.asyncio
    async def test_unknown_currency(self):
        provider = StaticRateProvider({})
        with pytest.raises(ExchangeRateUnavailable):
            await provider.rate("EUR")


class TestCbrRateProvider:
    @pytest.fixture
    def provider(self, cache):
        return CbrRateProvider(
            CurrencyConfig(source="cbr", markup_percentage=Decimal("0")),
            cache,
            CacheConfig(),
            fallback=StaticRateProvider({"USD": Decimal("80"), "EUR": Decimal("100")}),
        )

    @pytest.mark.asyncio
    async def test_fetches_once_and_caches(self, provider, fake_redis):
        provider.fetch_rates = AsyncMock(return_value=parse_cbr_rates(CBR_XML, Decimal("0")))

        assert await provider.rate("USD") == Decimal("90.0000")
        assert await provider.rate("CNY") == Decimal("12.5500")
        provider.fetch_rates.assert_awaited_once()

        assert fake_redis.ttls["cargo:rates:cbr:USD"] == 43200

    @pytest.mark.asyncio
    async def test_falls_back_to_static_when_cbr_is_down(self, provider):
        provider.fetch_rates = AsyncMock(side_effect=aiohttp.ClientError("unreachable"))
        assert await provider.rate("USD") == Decimal("80")

    @pytest.mark.asyncio
    async def test_currency_missing_from_cbr_uses_fallback(self, provider):
        provider.fetch_rates = AsyncMock(return_value={"USD": Decimal("90")})
        assert await provider.rate("EUR") == Decimal("100")

    @pytest.mark.asyncio
    async def test_no_rate_anywhere(self, cache):
        provider = CbrRateProvider(CurrencyConfig(source="cbr"), cache, CacheConfig())
        provider.fetch_rates = AsyncMock(side_effect=aiohttp.ClientError("unreachable"))
        with pytest.raises(ExchangeRateUnavailable):
            await provider.rate("USD")


class TestBuildRateProvider:
    def test_static_by_default(self, cache):
        provider = build_rate_provider(CurrencyConfig(source="static"), cache, CacheConfig())
        assert isinstance(provider, StaticRateProvider)

    def test_cbr_with_static_fallback(self, cache):
        provider = build_rate_provider(CurrencyConfig(source="cbr"), cache, CacheConfig())
        assert isinstance(provider, CbrRateProvider)
        assert isinstance(provider.fallback, StaticRateProvider)
