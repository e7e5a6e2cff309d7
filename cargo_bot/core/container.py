"""Dependency-injection container.

This module defines a dependency-injection (DI) container that wires together
the application's components. The configuration and the Telegram bot are
supplied from outside; every service is a singleton built from them.
"""

from dependency_injector import containers, providers

from cargo_bot.config import Config
from cargo_bot.services.admin import AdminDirectory
from cargo_bot.services.cache_service import CacheService
from cargo_bot.services.currency import build_rate_provider
from cargo_bot.services.database import Database
from cargo_bot.services.job_queue import JobQueue
from cargo_bot.services.jobs import JobHandlers
from cargo_bot.services.notifications import NotificationService, TelegramNotificationSink
from cargo_bot.services.orders import OrderService
from cargo_bot.services.pricing import PricingService
from cargo_bot.services.stats import StatsService
from cargo_bot.services.tracking import TrackingService
from cargo_bot.services.users import UserService


class Container(containers.DeclarativeContainer):
    """DI container for the application.

    This container holds the wiring for all the application's components.
    """

    config = providers.Dependency(instance_of=Config)
    bot = providers.Dependency()
    notification_sink = providers.Singleton(TelegramNotificationSink, bot=bot)

    # Infrastructure
    database = providers.Singleton(Database, config=config.provided.store)
    cache_service = providers.Singleton(CacheService, config=config.provided.cache)
    job_queue = providers.Singleton(JobQueue, database=database, config=config.provided.queue)

    # Services
    admin_directory = providers.Singleton(
        AdminDirectory, database=database, super_admin_ids=config.provided.bot.admin_ids
    )
    rate_provider = providers.Singleton(
        build_rate_provider,
        config=config.provided.currency,
        cache=cache_service,
        cache_config=config.provided.cache,
        home_currency=config.provided.bot.home_currency,
    )
    pricing_service = providers.Singleton(
        PricingService,
        database=database,
        cache=cache_service,
        cache_config=config.provided.cache,
        home_country=config.provided.bot.home_country,
    )
    user_service = providers.Singleton(
        UserService,
        database=database,
        cache=cache_service,
        cache_config=config.provided.cache,
        limits=config.provided.limits,
    )
    order_service = providers.Singleton(
        OrderService,
        database=database,
        pricing=pricing_service,
        users=user_service,
        rates=rate_provider,
        admins=admin_directory,
        queue=job_queue,
        limits=config.provided.limits,
        home_country=config.provided.bot.home_country,
    )
    tracking_service = providers.Singleton(TrackingService, database=database)
    stats_service = providers.Singleton(StatsService, database=database)
    notification_service = providers.Singleton(
        NotificationService,
        database=database,
        queue=job_queue,
        sink=notification_sink,
        batch_size=config.provided.queue.broadcast_batch_size,
    )

    # Background jobs
    job_handlers = providers.Singleton(
        JobHandlers,
        queue=job_queue,
        orders=order_service,
        notifications=notification_service,
        cache=cache_service,
    )
