"""Сервис кэширования на Redis.

Этот модуль предоставляет read-through кэширование для:
- Стоимости доставки по маршруту и весу (TTL 1 час)
- Статистики пользователей (TTL 5 минут)
- Валютных курсов (TTL 12 часов)

Кэш никогда не является источником истины: любая ошибка Redis логируется
и трактуется как промах, поэтому недоступный Redis не ломает вызывающих.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, TypeVar, cast

import redis.asyncio as redis
from pydantic import BaseModel

from ..config import CacheConfig

if TYPE_CHECKING:
    from redis.asyncio import Redis as AsyncRedis
else:
    AsyncRedis = Any

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class CacheService:
    """Сервис кэширования с Redis.

    Все ключи хранятся с префиксом пространства имён (по умолчанию `cargo:`).
    Значения сериализуются в JSON; Decimal пишется строкой и читается без потерь.
    """

    def __init__(self, config: CacheConfig, client: AsyncRedis | None = None):
        """Инициализирует сервис кэширования.

        Args:
            config: Конфигурация Redis соединения
            client: Готовый клиент Redis, если соединение создано снаружи
        """
        self.config = config
        self._redis: AsyncRedis | None = client
        self._connected = client is not None

    @property
    def connected(self) -> bool:
        return self._connected

    def _get_client(self) -> AsyncRedis | None:
        """Return active Redis client if connected."""
        if not self.config.enabled or not self._connected or self._redis is None:
            return None
        return self._redis

    async def connect(self) -> bool:
        """Подключается к Redis серверу.

        Returns:
            True если подключение успешно, False иначе
        """
        if not self.config.enabled:
            return False

        try:
            client = redis.from_url(
                self.config.redis_url,
                decode_responses=True,
                retry_on_timeout=True,
                health_check_interval=30,
                socket_connect_timeout=5,
                socket_timeout=5,
            )

            # Проверяем соединение
            async_client = cast(AsyncRedis, client)
            await async_client.ping()
            self._redis = async_client
            self._connected = True
            logger.info("Подключение к Redis успешно")
            return True

        except Exception as e:
            logger.warning(f"Не удалось подключиться к Redis: {e}")
            self._connected = False
            return False

    def _key(self, key: str) -> str:
        return f"{self.config.namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        """Получает значение из кэша.

        Args:
            key: Ключ без префикса пространства имён

        Returns:
            Десериализованное значение или None при промахе
        """
        client = self._get_client()
        if client is None:
            return None

        try:
            cached = await client.get(self._key(key))
            if cached is None:
                logger.debug(f"Кэш промах: {key}")
                return None
            logger.debug(f"Кэш попадание: {key}")
            return json.loads(cached)

        except Exception as e:
            logger.warning(f"Ошибка получения кэша {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        """Сохраняет значение в кэш.

        Args:
            key: Ключ без префикса пространства имён
            value: JSON-совместимое значение
            ttl: Время жизни в секундах

        Returns:
            True если кэширование успешно
        """
        client = self._get_client()
        if client is None:
            return False

        try:
            await client.setex(
                self._key(key), ttl, json.dumps(value, default=str, ensure_ascii=False)
            )
            return True

        except Exception as e:
            logger.warning(f"Ошибка кэширования {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        client = self._get_client()
        if client is None:
            return False

        try:
            return int(await client.delete(self._key(key))) > 0
        except Exception as e:
            logger.warning(f"Ошибка удаления ключа {key}: {e}")
            return False

    async def invalidate_prefix(self, prefix: str) -> int:
        """Удаляет все ключи с заданным префиксом.

        Использует SCAN, чтобы не блокировать Redis на больших базах.

        Args:
            prefix: Префикс ключа без пространства имён (например, "shipping:")

        Returns:
            Количество удаленных ключей
        """
        client = self._get_client()
        if client is None:
            return 0

        pattern = f"{self._key(prefix)}*"
        try:
            deleted = 0
            batch: list[str] = []
            async for key in client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += int(await client.delete(*batch))
                    batch = []
            if batch:
                deleted += int(await client.delete(*batch))
            if deleted:
                logger.info(f"Удалено {deleted} ключей по паттерну: {pattern}")
            return deleted

        except Exception as e:
            logger.warning(f"Ошибка удаления по паттерну {pattern}: {e}")
            return 0

    async def get_model(self, key: str, model: type[M]) -> M | None:
        """Получает Pydantic-модель из кэша; битые данные считаются промахом."""
        payload = await self.get(key)
        if payload is None:
            return None
        try:
            return model.model_validate(payload)
        except ValueError as e:
            logger.warning(f"Некорректные данные в кэше {key}: {e}")
            return None

    async def set_model(self, key: str, value: BaseModel, ttl: int) -> bool:
        return await self.set(key, value.model_dump(mode="json"), ttl)

    async def close(self) -> None:
        """Закрывает соединение с Redis."""
        client = self._redis
        if client is not None:
            try:
                await client.aclose()
                logger.info("Соединение с Redis закрыто")
            except Exception as e:
                logger.warning(f"Ошибка закрытия Redis: {e}")
            finally:
                self._connected = False
                self._redis = None
