"""Configuration management for the CargoExpress bot.

Handles all application configuration including environment variables, the
YAML settings file, and default values. Provides structured configuration
classes for each part of the application (bot, store, cache, job queue,
order limits, currency).
"""

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BotConfig(BaseSettings):
    """Main Telegram bot configuration.

    Attributes:
        bot_token: Telegram bot API token from environment.
        admin_ids_raw: Comma-separated Telegram IDs treated as super admins.
        port: Server port for webhook mode.
        webhook_domain: Public domain for webhooks, polling when unset.
        log_level: Root logging level.
        home_country: Destination country of all parcels.
        home_currency: Currency all order totals are denominated in.
    """

    bot_token: str = Field(default="", validation_alias="BOT_TOKEN")
    admin_ids_raw: str = Field(default="", validation_alias="ADMIN_IDS")
    port: int = Field(default=8443, validation_alias="PORT")
    webhook_domain: str | None = Field(default=None, validation_alias="WEBHOOK_DOMAIN")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    home_country: str = "RU"
    home_currency: str = "RUB"

    @property
    def admin_ids(self) -> set[int]:
        """Parse configured super admin IDs.

        Returns:
            Set of Telegram user IDs, empty when none configured.
        """
        return {int(part) for part in self.admin_ids_raw.split(",") if part.strip()}

    @property
    def use_webhook(self) -> bool:
        return bool(self.webhook_domain)


class StoreConfig(BaseSettings):
    """SQLite store settings.

    Attributes:
        path: Database file path.
        lock_timeout: Seconds to wait for the writer lock.
        statement_timeout: Seconds a single transaction may execute.
        max_retries: Attempts for transient store failures.
        retry_base_delay: First backoff delay in seconds, doubled per attempt.
    """

    model_config = SettingsConfigDict(env_prefix="STORE_")

    path: str = "data/cargo.db"
    lock_timeout: float = 5.0
    statement_timeout: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


class CacheConfig(BaseSettings):
    """Redis cache settings.

    Attributes:
        redis_url: Redis server URL.
        enabled: Master switch; a disabled cache behaves as always-miss.
        namespace: Prefix prepended to every key.
        shipping_ttl: TTL for shipping cost results (1 hour).
        stats_ttl: TTL for user statistics (5 minutes).
        rates_ttl: TTL for exchange rates (12 hours).
    """

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    redis_url: str = "redis://localhost:6379"
    enabled: bool = True
    namespace: str = "cargo"
    shipping_ttl: int = 3600
    stats_ttl: int = 300
    rates_ttl: int = 43200


class QueueConfig(BaseSettings):
    """Background job queue settings.

    Attributes:
        concurrency: Number of worker tasks.
        rate_limit_max: Jobs allowed per rate limit period.
        rate_limit_period: Rate limit window in seconds.
        default_attempts: Attempts for general jobs.
        notification_attempts: Attempts for notification jobs.
        backoff_delay: Base retry delay in seconds, doubled per attempt.
        job_timeout: Seconds one handler run may take.
        poll_interval: Idle worker sleep between claims.
        shutdown_timeout: Seconds to drain in-flight jobs on close.
        broadcast_batch_size: User IDs per broadcast sub-job.
        completed_retention: Seconds completed jobs are kept.
        failed_retention: Seconds dead jobs are kept.
    """

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

    concurrency: int = Field(default=5, ge=1)
    rate_limit_max: int = Field(default=10, ge=1)
    rate_limit_period: float = 1.0
    default_attempts: int = Field(default=3, ge=1)
    notification_attempts: int = Field(default=5, ge=1)
    backoff_delay: float = 2.0
    job_timeout: float = 60.0
    poll_interval: float = 1.0
    shutdown_timeout: float = 30.0
    broadcast_batch_size: int = Field(default=100, ge=1)
    completed_retention: int = 3600
    failed_retention: int = 86400


class OrderLimitsConfig(BaseSettings):
    """Order validation ceilings and identifier retry budgets."""

    model_config = SettingsConfigDict(env_prefix="ORDER_")

    max_weight_kg: Decimal = Decimal("50")
    max_declared_value: Decimal = Decimal("2000")
    max_quantity: int = 100
    order_number_attempts: int = 5
    custom_id_attempts: int = 10


class CurrencyConfig(BaseSettings):
    """Currency conversion settings.

    Attributes:
        source: Rate provider, 'static' or 'cbr'.
        markup_percentage: Markup added to CBR rates.
        cbr_url: CBR daily rates endpoint.
        static_rates: Home-currency units per unit of each currency.
    """

    model_config = SettingsConfigDict(env_prefix="RATES_")

    source: str = "static"
    markup_percentage: Decimal = Decimal("0")
    cbr_url: str = "https://www.cbr.ru/scripts/XML_daily.asp"
    static_rates: dict[str, Decimal] = Field(default_factory=dict)


def yaml_defaults(settings_cls: type[BaseSettings], data: dict[str, Any]) -> dict[str, Any]:
    """Drop settings.yml keys that an environment variable already sets.

    pydantic-settings ranks init kwargs above the environment, so YAML values
    are passed only for fields the environment leaves alone.
    """
    prefix = settings_cls.model_config.get("env_prefix", "")
    environ = {name.upper() for name in os.environ}
    return {key: value for key, value in data.items() if f"{prefix}{key}".upper() not in environ}


class Config:
    """Application configuration manager.

    Centralizes loading of environment variables and the settings.yml file,
    providing typed access to configuration sections for every component.
    Environment variables take precedence over settings.yml, which takes
    precedence over the defaults.
    """

    def __init__(self, config_dir: Path | None = None):
        """Initialize configuration manager.

        Args:
            config_dir: Path to configuration directory, defaults to cargo_bot/config.
        """
        if config_dir is None:
            config_dir = Path(__file__).parent / "config"

        self.config_dir = Path(config_dir)
        settings = self._load_settings()

        self.bot = BotConfig()
        self.store = StoreConfig()
        self.cache = CacheConfig(**yaml_defaults(CacheConfig, settings.get("cache", {})))
        self.queue = QueueConfig(**yaml_defaults(QueueConfig, settings.get("queue", {})))
        self.limits = OrderLimitsConfig(
            **yaml_defaults(OrderLimitsConfig, settings.get("limits", {}))
        )

        currency_data = yaml_defaults(CurrencyConfig, settings.get("currency", {}))
        # YAML floats go through str so 0.07 stays exactly 0.07
        if "markup_percentage" in currency_data:
            currency_data["markup_percentage"] = str(currency_data["markup_percentage"])
        if "static_rates" in currency_data:
            currency_data["static_rates"] = {
                code: str(rate) for code, rate in currency_data["static_rates"].items()
            }
        self.currency = CurrencyConfig(**currency_data)

    def _load_settings(self) -> dict[str, Any]:
        """Load settings.yml overrides.

        Returns:
            Parsed YAML mapping, empty when the file is missing.
        """
        settings_path = self.config_dir / "settings.yml"
        if not settings_path.exists():
            return {}

        with open(settings_path) as f:
            data = yaml.safe_load(f)

        return data or {}


# Global configuration instance
config = Config()
