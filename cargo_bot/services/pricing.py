"""Tariff and pricing engine.

Resolves the effective shipping tariff for a directed route, prices a parcel
as max(weight * price_per_kg, min_price), applies VIP tier discounts, and
checks parcels against warehouse limits. All arithmetic is Decimal. Route
prices are cached per weight; the cache only ever shortcuts the store.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from ..config import CacheConfig
from ..errors import TariffNotFound, ValidationFailed
from ..models import (
    VIP_DISCOUNT_PERCENT,
    DiscountBreakdown,
    RestrictionCheck,
    ShippingCost,
    ShippingTariff,
    User,
    Warehouse,
)
from .cache_service import CacheService
from .database import Database

logger = logging.getLogger(__name__)


def _weight_key(weight: Decimal) -> str:
    # 2.5 and 2.50 must share a cache entry
    return format(weight.normalize(), "f")


class PricingService:
    """Shipping cost calculator backed by the tariff table.

    Attributes:
        database: Store holding tariffs.
        cache: Read-through cache for computed costs.
        cache_config: TTL settings.
        home_country: Default destination of every route.
    """

    def __init__(
        self,
        database: Database,
        cache: CacheService,
        cache_config: CacheConfig,
        home_country: str = "RU",
    ):
        self.database = database
        self.cache = cache
        self.cache_config = cache_config
        self.home_country = home_country

    async def resolve_tariff(self, from_country: str, to_country: str | None = None) -> ShippingTariff:
        """Find the active tariff for a route.

        When several active tariffs exist for the same route the newest
        (by created_at, then id) wins.

        Raises:
            TariffNotFound: No active tariff for the route.
        """
        to_country = to_country or self.home_country
        tariff = await self.database.run(
            lambda repo: repo.find_active_tariff(from_country, to_country), write=False
        )
        if tariff is None:
            raise TariffNotFound(from_country=from_country, to_country=to_country)
        return tariff

    @staticmethod
    def calculate_cost(tariff: ShippingTariff, weight: Decimal) -> ShippingCost:
        """Price one parcel with a known tariff."""
        return ShippingCost(
            cost=max(weight * tariff.price_per_kg, tariff.min_price),
            price_per_kg=tariff.price_per_kg,
            min_price=tariff.min_price,
            delivery_days_min=tariff.delivery_days_min,
            delivery_days_max=tariff.delivery_days_max,
            tariff_id=tariff.id,
        )

    async def compute_shipping_cost(
        self, from_country: str, weight: Decimal, to_country: str | None = None
    ) -> ShippingCost:
        """Compute the shipping cost of a parcel.

        Args:
            from_country: Origin country code.
            weight: Parcel weight in kilograms, must be positive.
            to_country: Destination country code, home country by default.

        Returns:
            ShippingCost with the applied tariff values.

        Raises:
            ValidationFailed: Weight is not positive.
            TariffNotFound: No active tariff for the route.
        """
        if weight <= 0:
            raise ValidationFailed("Вес должен быть больше 0", weight=str(weight))

        to_country = to_country or self.home_country
        cache_key = f"shipping:{from_country}:{to_country}:{_weight_key(weight)}"

        cached = await self.cache.get_model(cache_key, ShippingCost)
        if cached is not None:
            return cached

        tariff = await self.resolve_tariff(from_country, to_country)
        result = self.calculate_cost(tariff, weight)
        await self.cache.set_model(cache_key, result, self.cache_config.shipping_ttl)

        logger.debug(
            f"Shipping {from_country}->{to_country} {weight}kg: {result.cost} "
            f"(tariff {tariff.id})"
        )
        return result

    async def bulk_compute(
        self, from_country: str, weights: Iterable[Decimal], to_country: str | None = None
    ) -> dict[Decimal, ShippingCost]:
        """Price several weights on one route with a single tariff lookup."""
        weights = list(weights)
        for weight in weights:
            if weight <= 0:
                raise ValidationFailed("Вес должен быть больше 0", weight=str(weight))

        tariff = await self.resolve_tariff(from_country, to_country)
        return {weight: self.calculate_cost(tariff, weight) for weight in weights}

    async def list_country_tariffs(self, from_country: str) -> list[ShippingTariff]:
        """Active outbound tariffs of a country, one per destination."""
        return await self.database.run(
            lambda repo: repo.list_active_tariffs(from_country), write=False
        )

    async def invalidate_route_cache(self, from_country: str | None = None) -> int:
        """Drop cached costs after tariffs change."""
        prefix = f"shipping:{from_country}:" if from_country else "shipping:"
        return await self.cache.invalidate_prefix(prefix)

    @staticmethod
    def apply_vip_discount(
        base_cost: Decimal, user: User, now: datetime | None = None
    ) -> DiscountBreakdown:
        """Apply the user's VIP tier discount.

        An expired VIP status counts as REGULAR; nothing is written back.
        """
        percent = VIP_DISCOUNT_PERCENT[user.effective_vip_tier(now)]
        discount = base_cost * percent / 100
        return DiscountBreakdown(
            original_cost=base_cost,
            discount=discount,
            discount_percent=percent,
            final_cost=max(base_cost - discount, Decimal("0")),
        )

    @staticmethod
    def check_warehouse_restrictions(
        warehouse: Warehouse,
        weight: Decimal,
        declared_value: Decimal,
        categories: Iterable[str] = (),
    ) -> RestrictionCheck:
        """Check a parcel against warehouse limits.

        Returns:
            RestrictionCheck; when denied, `reason` is ready to show the user.
        """
        if not warehouse.is_active:
            return RestrictionCheck(allowed=False, reason="Склад недоступен")

        if weight > warehouse.max_weight_kg:
            return RestrictionCheck(
                allowed=False, reason=f"Максимальный вес: {warehouse.max_weight_kg} кг"
            )

        if declared_value > warehouse.max_declared_value:
            return RestrictionCheck(
                allowed=False,
                reason=f"Максимальная объявленная стоимость: ${warehouse.max_declared_value}",
            )

        forbidden = {item.lower() for item in warehouse.restrictions}
        for category in categories:
            if category.lower() in forbidden:
                return RestrictionCheck(
                    allowed=False, reason=f"Запрещено к отправке: {category}"
                )

        return RestrictionCheck(allowed=True)
