"""Application entry point.

Main module that initializes and runs the Telegram bot application. Handles both
webhook mode (for production deployment) and polling mode (for local
development). Configures logging, wires the DI container, starts the job queue
workers and registers bot command handlers.
"""

import logging

from dependency_injector import providers
from telegram.ext import Application, CommandHandler

from .bot.error_handler import error_handler
from .bot.handlers import (
    balance,
    broadcast,
    calc,
    dashboard,
    orders,
    set_status,
    start,
    stats,
    track,
)
from .config import config
from .core.container import Container

# Logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, config.bot.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


def build_container(application: Application) -> Container:
    """Create the DI container bound to the loaded config and the application's bot."""
    container = Container()
    container.config.override(providers.Object(config))
    container.bot.override(providers.Object(application.bot))
    return container


async def initialize_resources(container: Container) -> None:
    """Initialize application resources.

    Creates the store schema, connects the cache and starts queue workers
    together with the recurring maintenance jobs.
    """
    container.database().initialize()

    cache = container.cache_service()
    if await cache.connect():
        logger.info("Redis кэш подключен")
    else:
        logger.info("Redis кэш недоступен, работаем без кэширования")

    queue = container.job_queue()
    queue.set_handler(container.job_handlers().handle)
    await queue.schedule_recurring()
    await queue.start()
    logger.info(f"Очередь задач запущена ({config.queue.concurrency} воркеров)")


async def cleanup_resources(container: Container) -> None:
    """Stop accepting jobs, drain running ones and release connections."""
    await container.job_queue().close()
    logger.info("Очередь задач остановлена")

    await container.cache_service().close()
    logger.info("Cache service закрыт")


def main() -> None:
    """Main application entry point.

    Initializes the Telegram bot application with proper configuration,
    registers command handlers, and starts the bot in either webhook mode
    (production) or polling mode (development).

    Raises:
        RuntimeError: If BOT_TOKEN environment variable is not set.
    """
    if not config.bot.bot_token:
        raise RuntimeError("Set BOT_TOKEN environment variable")

    # Create application
    app = Application.builder().token(config.bot.bot_token).concurrent_updates(True).build()
    container = build_container(app)
    app.bot_data["container"] = container

    async def post_init(application: Application) -> None:
        await initialize_resources(container)

    async def post_shutdown(application: Application) -> None:
        await cleanup_resources(container)

    app.post_init = post_init
    app.post_shutdown = post_shutdown

    # User commands
    app.add_handler(CommandHandler("start", start))
    app.add_handler(CommandHandler("calc", calc))
    app.add_handler(CommandHandler("track", track))
    app.add_handler(CommandHandler("orders", orders))
    app.add_handler(CommandHandler("balance", balance))

    # Admin commands
    app.add_handler(CommandHandler("setstatus", set_status))
    app.add_handler(CommandHandler("broadcast", broadcast))
    app.add_handler(CommandHandler("stats", stats))
    app.add_handler(CommandHandler("dashboard", dashboard))

    app.add_error_handler(error_handler)

    # Run in webhook or polling mode
    if config.bot.use_webhook:
        path = f"/{config.bot.bot_token}"
        webhook_url = f"https://{config.bot.webhook_domain}{path}"
        logger.info(f"Starting webhook at {webhook_url}")

        app.run_webhook(
            listen="0.0.0.0",
            port=config.bot.port,
            url_path=path,
            webhook_url=webhook_url,
        )
    else:
        logger.warning("No public domain found; falling back to long-polling")
        app.run_polling()


if __name__ == "__main__":
    main()
