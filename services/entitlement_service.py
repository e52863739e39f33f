"""
Кэширующий фасад над подписчиками, группами и настройками.

Горячий путь авторизации читает подписчика при каждом подключении клиента,
поэтому снимок подписчика (вместе с лимитами групп) кладётся в кэш.
"""
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Subscriber, Settings

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "load_balancing": {"enabled": False, "hide_overloaded": False},
}


@dataclass
class GroupLimit:
    """Лимит группы, к которой относится подписчик"""
    id: int
    name: str
    max_devices: int = 0
    active: bool = True


@dataclass
class SubscriberEntitlement:
    """Снимок подписчика для проверки авторизации (без ORM)"""
    user_id: str
    password: str
    enabled: bool
    traffic_tx: int = 0
    traffic_rx: int = 0
    traffic_limit: int = 0
    max_devices: int = 0
    expire_at: Optional[datetime] = None
    groups: list[GroupLimit] = field(default_factory=list)

    @property
    def traffic_used(self) -> int:
        return self.traffic_tx + self.traffic_rx

    @classmethod
    def from_model(cls, subscriber: Subscriber) -> "SubscriberEntitlement":
        return cls(
            user_id=subscriber.user_id,
            password=subscriber.password,
            enabled=bool(subscriber.enabled),
            traffic_tx=subscriber.traffic_tx or 0,
            traffic_rx=subscriber.traffic_rx or 0,
            traffic_limit=subscriber.traffic_limit or 0,
            max_devices=subscriber.max_devices or 0,
            expire_at=subscriber.expire_at,
            groups=[
                GroupLimit(id=g.id, name=g.name, max_devices=g.max_devices or 0, active=g.active)
                for g in subscriber.groups
            ],
        )

    def to_dict(self) -> dict:
        """Сериализация для кэша"""
        data = asdict(self)
        data["expire_at"] = self.expire_at.isoformat() if self.expire_at else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SubscriberEntitlement":
        data = dict(data)
        expire_at = data.get("expire_at")
        data["expire_at"] = datetime.fromisoformat(expire_at) if expire_at else None
        data["groups"] = [GroupLimit(**g) for g in data.get("groups", [])]
        return cls(**data)


class EntitlementCache:
    """Подписчики и настройки с кэшированием"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache,
        user_ttl: float = 60,
        settings_ttl: float = 30,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.user_ttl = user_ttl
        self.settings_ttl = settings_ttl

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"user:{user_id}"

    async def get_subscriber(self, user_id: str) -> Optional[SubscriberEntitlement]:
        """Получить подписчика (сначала из кэша)"""
        cached = await self.cache.get(self._user_key(user_id))
        if cached:
            return SubscriberEntitlement.from_dict(cached)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscriber).where(Subscriber.user_id == user_id)
            )
            subscriber = result.scalar_one_or_none()
            if subscriber is None:
                return None
            entitlement = SubscriberEntitlement.from_model(subscriber)

        await self.cache.set(self._user_key(user_id), entitlement.to_dict(), self.user_ttl)
        return entitlement

    async def invalidate_subscriber(self, user_id: str):
        """Сбросить кэш подписчика (вызывать после изменения в БД)"""
        await self.cache.delete(self._user_key(user_id))

    async def get_settings(self) -> dict:
        """Получить настройки панели (создаёт если нет)"""
        cached = await self.cache.get("settings")
        if cached:
            return cached

        async with self.session_factory() as session:
            settings = await session.get(Settings, "settings")
            if settings is None:
                settings = Settings(id="settings", load_balancing=dict(DEFAULT_SETTINGS["load_balancing"]))
                session.add(settings)
                await session.commit()
                logger.info("Settings: созданы настройки по умолчанию")
            data = {"load_balancing": dict(settings.load_balancing or {})}

        await self.cache.set("settings", data, self.settings_ttl)
        return data

    async def invalidate_settings(self):
        """Сбросить кэш настроек"""
        await self.cache.delete("settings")
