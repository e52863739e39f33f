"""
Состояние приложения: все компоненты с собственными кэшами и ресурсами.
Создаётся один раз на процесс, закрывается при shutdown.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet import NodeProvisioner, PoolConfig, SSHPool, TerminalManager
from services.auth_service import AuthorizationGateway
from services.cache_service import create_cache
from services.encryption_service import EncryptionService
from services.entitlement_service import EntitlementCache
from services.request_counter import RequestCounter
from services.session_service import SessionAccountant

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    session_factory: async_sessionmaker[AsyncSession]
    cache: Any
    encryption: EncryptionService
    pool: SSHPool
    provisioner: NodeProvisioner
    terminals: TerminalManager
    entitlements: EntitlementCache
    sessions: SessionAccountant
    gateway: AuthorizationGateway
    admin_token: str = ""
    sync_interval: int = 2
    scheduler: Any = None
    requests: RequestCounter = field(default_factory=RequestCounter)

    async def close(self):
        """Остановить планировщик, закрыть соединения и кэш"""
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        await self.terminals.close_all()
        await self.pool.close_all()
        await self.sessions.close()
        await self.cache.close()
        logger.info("👋 Состояние панели закрыто")


def build_state(
    config,
    session_factory: async_sessionmaker[AsyncSession],
    cache=None,
    connector: Optional[Callable[..., Any]] = None,
) -> AppState:
    """Собрать компоненты панели из конфигурации"""
    cache = cache if cache is not None else create_cache(config.USE_REDIS, config.REDIS_URL)
    encryption = EncryptionService(config.ENCRYPTION_KEY)

    pool = SSHPool(
        PoolConfig(
            max_idle_time=config.SSH_MAX_IDLE_TIME,
            keepalive_interval=config.SSH_KEEPALIVE_INTERVAL,
            connect_timeout=config.SSH_CONNECT_TIMEOUT,
            max_retries=config.SSH_MAX_RETRIES,
            retry_delay=config.SSH_RETRY_DELAY,
            cleanup_interval=config.SSH_CLEANUP_INTERVAL,
        ),
        decrypt=encryption.decrypt,
        connector=connector,
    )
    provisioner = NodeProvisioner(pool, config.AUTH_URL, config.ACME_EMAIL or None)
    terminals = TerminalManager(
        decrypt=encryption.decrypt,
        connector=connector,
        keepalive_interval=config.SSH_KEEPALIVE_INTERVAL,
    )

    entitlements = EntitlementCache(
        session_factory,
        cache,
        user_ttl=config.USER_CACHE_TTL,
        settings_ttl=config.SETTINGS_CACHE_TTL,
    )
    sessions = SessionAccountant(
        session_factory,
        cache,
        ttl=config.SESSIONS_CACHE_TTL,
        node_timeout=config.STATS_TIMEOUT,
    )
    gateway = AuthorizationGateway(entitlements, sessions, encryption.generate_password)

    return AppState(
        session_factory=session_factory,
        cache=cache,
        encryption=encryption,
        pool=pool,
        provisioner=provisioner,
        terminals=terminals,
        entitlements=entitlements,
        sessions=sessions,
        gateway=gateway,
        admin_token=config.ADMIN_TOKEN,
        sync_interval=config.SYNC_INTERVAL,
    )
