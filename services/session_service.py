"""
Подсчёт онлайн сессий подписчиков по всем нодам.

Каждая нода отдаёт /online своего trafficStats API. Ответы опрашиваются
параллельно, сводятся в один снимок и кэшируются на несколько секунд.
Нода, которая не ответила вовремя, просто не учитывается.
"""
import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import Node

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "online_sessions"


@dataclass
class SessionSnapshot:
    """Снимок онлайн сессий: user_id -> количество нод, где он онлайн"""
    counts: dict[str, int] = field(default_factory=dict)
    fetched_at: float = 0.0
    ttl: float = 5.0

    def is_fresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now - self.fetched_at < self.ttl

    def count(self, user_id: str) -> int:
        return self.counts.get(user_id, 0)

    def to_dict(self) -> dict:
        return {"counts": self.counts, "fetched_at": self.fetched_at, "ttl": self.ttl}

    @classmethod
    def from_dict(cls, data: dict) -> "SessionSnapshot":
        return cls(
            counts={k: int(v) for k, v in data.get("counts", {}).items()},
            fetched_at=float(data.get("fetched_at", 0.0)),
            ttl=float(data.get("ttl", 5.0)),
        )


@dataclass
class StatsTarget:
    """Адрес stats API ноды (без ORM, чтобы не держать сессию БД)"""
    node_id: int
    name: str
    ip: str
    stats_port: int
    stats_secret: str

    @property
    def url(self) -> str:
        return f"http://{self.ip}:{self.stats_port}/online"


class SessionAccountant:
    """Счётчик одновременных сессий по всему флоту"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache,
        ttl: float = 5.0,
        node_timeout: float = 2.0,
    ):
        self.session_factory = session_factory
        self.cache = cache
        self.ttl = ttl
        self.node_timeout = node_timeout

        # HTTP сессия (переиспользуется между опросами)
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _get_http_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.node_timeout),
                connector=aiohttp.TCPConnector(limit=100, limit_per_host=5),
            )
        return self._http_session

    async def close(self):
        """Закрыть HTTP сессию"""
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()

    async def invalidate(self):
        """Сбросить снимок (следующий запрос опросит ноды заново)"""
        await self.cache.delete(SNAPSHOT_KEY)

    async def count(self, user_id: str) -> int:
        """Количество онлайн сессий подписчика"""
        snapshot = await self.get_snapshot()
        return snapshot.count(user_id)

    async def get_snapshot(self) -> SessionSnapshot:
        """Снимок из кэша, либо свежий опрос нод"""
        cached = await self.cache.get(SNAPSHOT_KEY)
        if cached:
            snapshot = SessionSnapshot.from_dict(cached)
            if snapshot.is_fresh():
                return snapshot

        try:
            targets = await self._load_targets()
        except Exception as e:
            # Без списка нод считаем что сессий нет (разрешаем подключение)
            logger.error(f"Sessions: ошибка получения списка нод: {e}")
            return SessionSnapshot(ttl=self.ttl, fetched_at=time.time())

        snapshot = await self.refresh(targets)
        return snapshot

    async def refresh(self, targets: list[StatsTarget]) -> SessionSnapshot:
        """Опросить ноды параллельно и заменить снимок целиком"""
        results = await asyncio.gather(*(self._poll_node(t) for t in targets))

        counts: Counter[str] = Counter()
        for online in results:
            if online:
                counts.update(online.keys())

        snapshot = SessionSnapshot(counts=dict(counts), fetched_at=time.time(), ttl=self.ttl)
        await self.cache.set(SNAPSHOT_KEY, snapshot.to_dict(), self.ttl)

        answered = sum(1 for r in results if r is not None)
        logger.debug(f"Sessions: опрошено нод {answered}/{len(targets)}, онлайн {sum(counts.values())}")
        return snapshot

    async def _load_targets(self) -> list[StatsTarget]:
        """Активные ноды с включённым stats API"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Node).where(
                    Node.active.is_(True),
                    Node.stats_port > 0,
                    Node.stats_secret != "",
                )
            )
            return [
                StatsTarget(
                    node_id=n.id,
                    name=n.name,
                    ip=n.ip,
                    stats_port=n.stats_port,
                    stats_secret=n.stats_secret,
                )
                for n in result.scalars().all()
            ]

    async def _poll_node(self, target: StatsTarget) -> Optional[dict]:
        """Опрос одной ноды с собственным таймаутом. Ошибка = None."""
        try:
            return await asyncio.wait_for(self._query_node(target), timeout=self.node_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Sessions: нода {target.name} не ответила за {self.node_timeout}с")
        except (aiohttp.ClientError, ValueError) as e:
            logger.debug(f"Sessions: нода {target.name} недоступна: {e}")
        return None

    async def _query_node(self, target: StatsTarget) -> dict:
        """GET /online на ноде. Ответ: {"user_id": {...}, ...}"""
        http = await self._get_http_session()
        async with http.get(target.url, headers={"Authorization": target.stats_secret}) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)
        if not isinstance(data, dict):
            raise ValueError(f"unexpected /online payload: {type(data).__name__}")
        return data
