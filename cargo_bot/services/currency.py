"""Exchange rate providers.

Converts shop currencies into the home currency (RUB) for purchase orders.
StaticRateProvider serves rates from settings.yml. CbrRateProvider fetches
the Central Bank of Russia daily XML, applies the configured markup, caches
rates in Redis for 12 hours, and falls back to the static table when CBR is
unreachable.
"""

import asyncio
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import aiohttp
from defusedxml import ElementTree as ET

from ..config import CacheConfig, CurrencyConfig
from ..errors import ExchangeRateUnavailable
from ..models import CurrencyRate
from .cache_service import CacheService

logger = logging.getLogger(__name__)


class ExchangeRateProvider(Protocol):
    async def rate(self, currency: str) -> Decimal:
        """Home-currency units per one unit of `currency`."""
        ...


class StaticRateProvider:
    """Rates from configuration."""

    def __init__(self, rates: dict[str, Decimal], home_currency: str = "RUB"):
        self.rates = {code.upper(): Decimal(value) for code, value in rates.items()}
        self.home_currency = home_currency

    async def rate(self, currency: str) -> Decimal:
        currency = currency.upper()
        if currency == self.home_currency:
            return Decimal("1")
        try:
            return self.rates[currency]
        except KeyError:
            raise ExchangeRateUnavailable(currency=currency) from None


def parse_cbr_rates(content: bytes, markup_percentage: Decimal) -> dict[str, Decimal]:
    """Parse the CBR daily XML into per-unit rates with markup applied.

    Args:
        content: Raw XML_daily.asp response body.
        markup_percentage: Percent added on top of the official rate.

    Returns:
        Mapping of currency code to RUB per one unit, rounded to kopecks.
    """
    root = ET.fromstring(content)
    multiplier = Decimal("1") + markup_percentage / Decimal("100")
    rates: dict[str, Decimal] = {}

    for valute in root.findall("Valute"):
        char_code = valute.find("CharCode")
        value_elem = valute.find("Value")
        nominal_elem = valute.find("Nominal")
        if char_code is None or value_elem is None or nominal_elem is None:
            continue
        if not (char_code.text and value_elem.text and nominal_elem.text):
            continue

        base_rate = Decimal(value_elem.text.replace(",", ".")) / Decimal(nominal_elem.text)
        rates[char_code.text] = (base_rate * multiplier).quantize(
            Decimal("0.0001"), ROUND_HALF_UP
        )

    logger.info(f"CBR rates parsed for {root.get('Date')}: {len(rates)} currencies")
    return rates


class CbrRateProvider:
    """CBR daily rates with Redis caching and static fallback."""

    def __init__(
        self,
        config: CurrencyConfig,
        cache: CacheService,
        cache_config: CacheConfig,
        fallback: StaticRateProvider | None = None,
        home_currency: str = "RUB",
    ):
        self.config = config
        self.cache = cache
        self.cache_config = cache_config
        self.fallback = fallback
        self.home_currency = home_currency
        self._fetch_lock = asyncio.Lock()

    async def fetch_rates(self) -> dict[str, Decimal]:
        """Download and parse today's CBR rates."""
        timeout = aiohttp.ClientTimeout(total=10)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.config.cbr_url) as response:
                response.raise_for_status()
                content = await response.read()
        return parse_cbr_rates(content, self.config.markup_percentage)

    async def _cached(self, currency: str) -> Decimal | None:
        cached = await self.cache.get_model(f"rates:cbr:{currency}", CurrencyRate)
        return cached.rate if cached else None

    async def rate(self, currency: str) -> Decimal:
        currency = currency.upper()
        if currency == self.home_currency:
            return Decimal("1")

        cached = await self._cached(currency)
        if cached is not None:
            return cached

        # Concurrent misses share one CBR request
        async with self._fetch_lock:
            cached = await self._cached(currency)
            if cached is not None:
                return cached

            try:
                rates = await self.fetch_rates()
            except (aiohttp.ClientError, TimeoutError, ET.ParseError, ArithmeticError) as e:
                logger.error(f"Ошибка получения курсов CBR: {e}")
                return await self._fallback_rate(currency)

            for code, value in rates.items():
                await self.cache.set_model(
                    f"rates:cbr:{code}",
                    CurrencyRate(currency=code, rate=value, source="cbr"),
                    self.cache_config.rates_ttl,
                )

        if currency not in rates:
            return await self._fallback_rate(currency)
        return rates[currency]

    async def _fallback_rate(self, currency: str) -> Decimal:
        if self.fallback is None:
            raise ExchangeRateUnavailable(currency=currency)
        logger.warning(f"Используем статический курс для {currency}")
        return await self.fallback.rate(currency)


def build_rate_provider(
    config: CurrencyConfig,
    cache: CacheService,
    cache_config: CacheConfig,
    home_currency: str = "RUB",
) -> ExchangeRateProvider:
    """Create the provider selected by `config.source`."""
    static = StaticRateProvider(config.static_rates, home_currency)
    if config.source == "cbr":
        return CbrRateProvider(config, cache, cache_config, static, home_currency)
    return static
