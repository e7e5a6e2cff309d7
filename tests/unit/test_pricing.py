"""Tests for the tariff and pricing engine."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cargo_bot.config import CacheConfig
from cargo_bot.errors import TariffNotFound, ValidationFailed
from cargo_bot.models import ShippingTariff, User, VipTier, Warehouse, utc_now
from cargo_bot.services.cache_service import CacheService
from cargo_bot.services.pricing import PricingService


def _tariff(price_per_kg="650", min_price="1000") -> ShippingTariff:
    return ShippingTariff(
        from_country="US",
        to_country="RU",
        price_per_kg=Decimal(price_per_kg),
        min_price=Decimal(min_price),
        delivery_days_min=10,
        delivery_days_max=14,
    )


def _user(tier=VipTier.REGULAR, expires_at=None) -> User:
    return User(
        telegram_id=1, custom_id="12345", first_name="Test", vip_tier=tier, vip_expires_at=expires_at
    )


class TestCalculateCost:
    """Cost formula: max(weight * price_per_kg, min_price)."""

    def test_weight_above_floor(self):
        result = PricingService.calculate_cost(_tariff(), Decimal("2.5"))
        assert result.cost == Decimal("1625")
        assert result.delivery_days_min == 10
        assert result.delivery_days_max == 14

    def test_minimum_price_applies_to_light_parcels(self):
        result = PricingService.calculate_cost(_tariff(), Decimal("0.5"))
        assert result.cost == Decimal("1000")

    def test_exact_decimal_arithmetic(self):
        result = PricingService.calculate_cost(_tariff("0.1", "0"), Decimal("3"))
        assert result.cost == Decimal("0.3")


class TestComputeShippingCost:
    """Route resolution, validation and caching."""

    @pytest.mark.asyncio
    async def test_us_route(self, pricing, reference_data):
        result = await pricing.compute_shipping_cost("US", Decimal("2.5"))
        assert result.cost == Decimal("1625")
        assert result.tariff_id == reference_data["us_tariff"].id

    @pytest.mark.asyncio
    async def test_cn_route_hits_minimum(self, pricing, reference_data):
        result = await pricing.compute_shipping_cost("CN", Decimal("1"))
        assert result.cost == Decimal("1000")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("weight", ["0", "-1"])
    async def test_non_positive_weight_rejected(self, pricing, reference_data, weight):
        with pytest.raises(ValidationFailed):
            await pricing.compute_shipping_cost("US", Decimal(weight))

    @pytest.mark.asyncio
    async def test_unknown_route(self, pricing, reference_data):
        with pytest.raises(TariffNotFound):
            await pricing.compute_shipping_cost("DE", Decimal("1"))

    @pytest.mark.asyncio
    async def test_newest_active_tariff_wins(self, pricing, database, reference_data):
        newer = ShippingTariff(
            from_country="US",
            to_country="RU",
            price_per_kg=Decimal("700"),
            min_price=Decimal("1000"),
            delivery_days_min=7,
            delivery_days_max=10,
            created_at=utc_now(),
        )
        inactive = newer.model_copy(
            update={"price_per_kg": Decimal("1"), "is_active": False, "created_at": utc_now() + timedelta(seconds=1)}
        )
        await database.run(lambda repo: repo.add_tariff(newer))
        await database.run(lambda repo: repo.add_tariff(inactive))

        tariff = await pricing.resolve_tariff("US")
        assert tariff.price_per_kg == Decimal("700")

        result = await pricing.compute_shipping_cost("US", Decimal("3"))
        assert result.cost == Decimal("2100")

    @pytest.mark.asyncio
    async def test_result_is_cached_by_normalized_weight(self, pricing, fake_redis, reference_data):
        await pricing.compute_shipping_cost("US", Decimal("2.5"))
        assert "cargo:shipping:US:RU:2.5" in fake_redis.data
        assert fake_redis.ttls["cargo:shipping:US:RU:2.5"] == 3600

        # Same weight written differently hits the same entry
        await pricing.compute_shipping_cost("US", Decimal("2.50"))
        assert [key for key in fake_redis.data if key.startswith("cargo:shipping:")] == [
            "cargo:shipping:US:RU:2.5"
        ]

    @pytest.mark.asyncio
    async def test_cached_value_is_returned(self, pricing, database, reference_data):
        first = await pricing.compute_shipping_cost("US", Decimal("2.5"))

        # Deactivate the tariff; the cached price still answers
        tariff_id = reference_data["us_tariff"].id
        await database.run(
            lambda repo: repo.conn.execute(
                "UPDATE shipping_tariffs SET is_active = 0 WHERE id = ?", [tariff_id]
            )
        )
        second = await pricing.compute_shipping_cost("US", Decimal("2.5"))
        assert second == first

        await pricing.invalidate_route_cache("US")
        with pytest.raises(TariffNotFound):
            await pricing.compute_shipping_cost("US", Decimal("2.5"))

    @pytest.mark.asyncio
    async def test_broken_cache_falls_back_to_store(self, database, reference_data):
        class BrokenRedis:
            async def get(self, key):
                raise ConnectionError("redis down")

            async def setex(self, key, ttl, value):
                raise ConnectionError("redis down")

        cache_config = CacheConfig()
        pricing = PricingService(database, CacheService(cache_config, client=BrokenRedis()), cache_config)

        result = await pricing.compute_shipping_cost("US", Decimal("2.5"))
        assert result.cost == Decimal("1625")

    @pytest.mark.asyncio
    async def test_bulk_compute(self, pricing, reference_data):
        results = await pricing.bulk_compute("US", [Decimal("1"), Decimal("2.5")])
        assert results[Decimal("1")].cost == Decimal("1000")
        assert results[Decimal("2.5")].cost == Decimal("1625")

    @pytest.mark.asyncio
    async def test_list_country_tariffs(self, pricing, reference_data):
        tariffs = await pricing.list_country_tariffs("US")
        assert [t.to_country for t in tariffs] == ["RU"]


# 0.1 kg steps across both floor crossovers (1.25 kg for CN, ~1.54 kg for US),
# then coarser steps up to the 50 kg limit
SWEEP_WEIGHTS = sorted(
    {Decimal(n) / 10 for n in range(1, 31)}
    | {Decimal(w) for w in ("1.24", "1.25", "1.26", "1.53", "1.538", "1.539", "1.54")}
    | {Decimal(w) for w in range(4, 51, 2)}
    | {Decimal("49.9")}
)


class TestCostIsMonotonicInWeight:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("route,tariff_key", [("US", "us_tariff"), ("CN", "cn_tariff")])
    async def test_heavier_never_cheaper(self, pricing, reference_data, route, tariff_key):
        tariff = reference_data[tariff_key]

        costs = [(await pricing.compute_shipping_cost(route, w)).cost for w in SWEEP_WEIGHTS]

        for weight, cost in zip(SWEEP_WEIGHTS, costs):
            assert cost == max(weight * tariff.price_per_kg, tariff.min_price)
            assert cost >= tariff.min_price
        for lighter, heavier in zip(costs, costs[1:]):
            assert lighter <= heavier
        # The sweep really crosses from the floor into per-kg pricing
        assert costs[0] == tariff.min_price
        assert costs[-1] == SWEEP_WEIGHTS[-1] * tariff.price_per_kg


class TestVipDiscount:
    def test_regular_gets_no_discount(self):
        breakdown = PricingService.apply_vip_discount(Decimal("1625"), _user())
        assert breakdown.discount == 0
        assert breakdown.final_cost == Decimal("1625")

    @pytest.mark.parametrize(
        "tier,percent,final",
        [
            (VipTier.SILVER, 5, Decimal("1543.75")),
            (VipTier.GOLD, 10, Decimal("1462.5")),
            (VipTier.PLATINUM, 15, Decimal("1381.25")),
        ],
    )
    def test_tier_percentages(self, tier, percent, final):
        breakdown = PricingService.apply_vip_discount(Decimal("1625"), _user(tier))
        assert breakdown.discount_percent == percent
        assert breakdown.final_cost == final

    def test_expired_vip_counts_as_regular(self):
        user = _user(VipTier.GOLD, expires_at=utc_now() - timedelta(days=1))
        breakdown = PricingService.apply_vip_discount(Decimal("1000"), user)
        assert breakdown.discount_percent == 0
        assert breakdown.final_cost == Decimal("1000")
        # The stored tier is not rewritten
        assert user.vip_tier is VipTier.GOLD


class TestWarehouseRestrictions:
    @pytest.fixture
    def warehouse(self):
        return Warehouse(
            id=1,
            country_code="US",
            name="Delaware",
            max_weight_kg=Decimal("30"),
            max_declared_value=Decimal("1000"),
            restrictions=["Batteries"],
        )

    def test_allowed(self, warehouse):
        check = PricingService.check_warehouse_restrictions(warehouse, Decimal("30"), Decimal("1000"))
        assert check.allowed
        assert check.reason is None

    def test_overweight(self, warehouse):
        check = PricingService.check_warehouse_restrictions(warehouse, Decimal("31"), Decimal("10"))
        assert not check.allowed
        assert check.reason == "Максимальный вес: 30 кг"

    def test_over_declared_value(self, warehouse):
        check = PricingService.check_warehouse_restrictions(warehouse, Decimal("1"), Decimal("1001"))
        assert not check.allowed
        assert check.reason == "Максимальная объявленная стоимость: $1000"

    def test_forbidden_category_is_case_insensitive(self, warehouse):
        check = PricingService.check_warehouse_restrictions(
            warehouse, Decimal("1"), Decimal("10"), ["clothes", "batteries"]
        )
        assert not check.allowed
        assert check.reason == "Запрещено к отправке: batteries"

    def test_inactive_warehouse(self, warehouse):
        closed = warehouse.model_copy(update={"is_active": False})
        check = PricingService.check_warehouse_restrictions(closed, Decimal("1"), Decimal("10"))
        assert not check.allowed
        assert check.reason == "Склад недоступен"
