"""Global test configuration and fixtures.

Provides shared fixtures for all test levels: a throwaway SQLite store seeded
with reference data, an in-memory Redis stand-in, and the services wired the
same way the DI container wires them.
"""

import fnmatch
import os
from datetime import timedelta
from decimal import Decimal
from typing import Any

import pytest

from cargo_bot.config import CacheConfig, OrderLimitsConfig, QueueConfig, StoreConfig
from cargo_bot.models import Country, Product, ShippingTariff, Warehouse, utc_now
from cargo_bot.services.admin import AdminDirectory
from cargo_bot.services.cache_service import CacheService
from cargo_bot.services.currency import StaticRateProvider
from cargo_bot.services.database import Database
from cargo_bot.services.job_queue import JobQueue
from cargo_bot.services.jobs import JobHandlers
from cargo_bot.services.notifications import NotificationService
from cargo_bot.services.orders import OrderService
from cargo_bot.services.pricing import PricingService
from cargo_bot.services.stats import StatsService
from cargo_bot.services.users import UserService

# Test constants
SUPER_ADMIN_ID = 999
TEST_BOT_TOKEN = "test_bot_token_placeholder"


@pytest.fixture(autouse=True)
def test_environment():
    """Setup test environment variables for all tests."""
    test_env = {
        "BOT_TOKEN": TEST_BOT_TOKEN,
        "ADMIN_IDS": str(SUPER_ADMIN_ID),
        "LOG_LEVEL": "DEBUG",
    }

    # Store original values
    original_env = {}
    for key, value in test_env.items():
        original_env[key] = os.environ.get(key)
        os.environ[key] = value

    yield

    # Restore original values
    for key, original_value in original_env.items():
        if original_value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = original_value


class FakeRedis:
    """In-memory subset of the redis.asyncio client used by CacheService."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def scan_iter(self, match: str | None = None, count: int | None = None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        self.closed = True


class FakeSink:
    """Notification transport that records messages instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[int, str]] = []
        self.failures = 0

    async def send(self, chat_id: int, message: str, context: dict[str, Any] | None = None) -> bool:
        if self.failures > 0:
            self.failures -= 1
            return False
        self.sent.append((chat_id, message))
        return True


async def seed_reference_data(database: Database) -> dict[str, Any]:
    """Countries, warehouses, tariffs and a catalogue product.

    US -> RU costs 650 per kg with a 1000 floor, so 2.5 kg costs 1625.
    CN -> RU costs 800 per kg with a 1000 floor, so 1 kg costs 1000.
    """

    def work(repo):
        repo.upsert_country(Country(code="RU", name="Россия", currency="RUB"))
        repo.upsert_country(
            Country(code="US", name="США", currency="USD", purchase_commission=Decimal("10"))
        )
        repo.upsert_country(
            Country(code="CN", name="Китай", currency="CNY", purchase_commission=Decimal("5"))
        )
        repo.upsert_country(
            Country(code="TR", name="Турция", currency="TRY", purchase_available=False)
        )
        us_warehouse = repo.add_warehouse(
            Warehouse(
                country_code="US",
                name="Delaware",
                max_weight_kg=Decimal("30"),
                max_declared_value=Decimal("1000"),
                restrictions=["batteries", "liquids"],
            )
        )
        cn_warehouse = repo.add_warehouse(
            Warehouse(
                country_code="CN",
                name="Guangzhou",
                max_weight_kg=Decimal("40"),
                max_declared_value=Decimal("1500"),
            )
        )
        created_at = utc_now() - timedelta(days=30)
        us_tariff = repo.add_tariff(
            ShippingTariff(
                from_country="US",
                to_country="RU",
                price_per_kg=Decimal("650"),
                min_price=Decimal("1000"),
                delivery_days_min=10,
                delivery_days_max=14,
                created_at=created_at,
            )
        )
        cn_tariff = repo.add_tariff(
            ShippingTariff(
                from_country="CN",
                to_country="RU",
                price_per_kg=Decimal("800"),
                min_price=Decimal("1000"),
                delivery_days_min=14,
                delivery_days_max=14,
                created_at=created_at,
            )
        )
        product = repo.add_product(
            Product(
                country_code="CN",
                name="Power bank",
                price=Decimal("100"),
                currency="CNY",
                estimated_weight=Decimal("0.5"),
            )
        )
        return {
            "us_warehouse": us_warehouse,
            "cn_warehouse": cn_warehouse,
            "us_tariff": us_tariff,
            "cn_tariff": cn_tariff,
            "product": product,
        }

    return await database.run(work)


@pytest.fixture
def store_config(tmp_path):
    return StoreConfig(path=str(tmp_path / "cargo.db"), retry_base_delay=0.01)


@pytest.fixture
def database(store_config):
    db = Database(store_config)
    db.initialize()
    return db


@pytest.fixture
async def reference_data(database):
    return await seed_reference_data(database)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache_config():
    return CacheConfig()


@pytest.fixture
def cache(cache_config, fake_redis):
    return CacheService(cache_config, client=fake_redis)


@pytest.fixture
def queue_config():
    return QueueConfig(
        backoff_delay=0,
        rate_limit_max=1000,
        poll_interval=0.01,
        shutdown_timeout=1.0,
        job_timeout=5.0,
        broadcast_batch_size=2,
    )


@pytest.fixture
def job_queue(database, queue_config):
    return JobQueue(database, queue_config)


@pytest.fixture
def limits():
    return OrderLimitsConfig()


@pytest.fixture
def pricing(database, cache, cache_config):
    return PricingService(database, cache, cache_config)


@pytest.fixture
def user_service(database, cache, cache_config, limits):
    return UserService(database, cache, cache_config, limits)


@pytest.fixture
def admins(database):
    return AdminDirectory(database, super_admin_ids={SUPER_ADMIN_ID})


@pytest.fixture
def rates():
    return StaticRateProvider({"USD": Decimal("90"), "CNY": Decimal("13")})


@pytest.fixture
def order_service(database, pricing, user_service, rates, admins, job_queue, limits):
    return OrderService(database, pricing, user_service, rates, admins, job_queue, limits)


@pytest.fixture
def stats_service(database):
    return StatsService(database)


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def notification_service(database, job_queue, sink, queue_config):
    return NotificationService(
        database, job_queue, sink, batch_size=queue_config.broadcast_batch_size
    )


@pytest.fixture
def job_handlers(job_queue, order_service, notification_service, cache):
    handlers = JobHandlers(job_queue, order_service, notification_service, cache)
    job_queue.set_handler(handlers.handle)
    return handlers


@pytest.fixture
async def user(user_service):
    return await user_service.register_user(telegram_id=100500, first_name="Иван", username="ivan")


@pytest.fixture
def super_admin_id():
    return SUPER_ADMIN_ID
