"""
Кэш для горячего пути авторизации.

Основной вариант: Redis (общий для всех инстансов панели).
Запасной: in-process TTL кэш (для одиночного инстанса и тестов).
Значения: JSON-совместимые dict/list/числа.
"""
import json
import logging
import time
from typing import Any, Optional

from redis.asyncio import Redis, from_url as redis_from_url
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "panel:"


class MemoryCache:
    """Простой TTL кэш в памяти процесса"""

    def __init__(self):
        # key -> (value, expires_at)
        self._data: dict[str, tuple[Any, float]] = {}

    async def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: float):
        self._data[key] = (value, time.monotonic() + ttl)

    async def delete(self, key: str):
        self._data.pop(key, None)

    async def clear(self):
        self._data.clear()

    async def close(self):
        self._data.clear()


class RedisCache:
    """
    Кэш поверх Redis.

    Ошибки Redis не пробрасываются: при недоступности Redis
    чтение считается промахом, а запись пропускается.
    """

    def __init__(self, client: Redis, prefix: str = KEY_PREFIX):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis_from_url(url, decode_responses=True))

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache: Redis недоступен при чтении {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Cache: повреждённое значение {key}, удаляем")
            await self.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl: float):
        # Redis принимает TTL в миллисекундах
        ttl_ms = max(1, int(ttl * 1000))
        try:
            await self.client.set(self._key(key), json.dumps(value, default=str), px=ttl_ms)
        except RedisError as e:
            logger.warning(f"Cache: Redis недоступен при записи {key}: {e}")

    async def delete(self, key: str):
        try:
            await self.client.delete(self._key(key))
        except RedisError as e:
            logger.warning(f"Cache: Redis недоступен при удалении {key}: {e}")

    async def clear(self):
        try:
            keys = [k async for k in self.client.scan_iter(match=f"{self.prefix}*")]
            if keys:
                await self.client.delete(*keys)
        except RedisError as e:
            logger.warning(f"Cache: не удалось очистить кэш: {e}")

    async def close(self):
        await self.client.aclose()


def create_cache(use_redis: bool, redis_url: str):
    """Выбрать бэкенд кэша по конфигурации"""
    if use_redis:
        logger.info(f"Cache: используем Redis ({redis_url})")
        return RedisCache.from_url(redis_url)
    logger.info("Cache: Redis отключён, используем кэш в памяти")
    return MemoryCache()
