"""
Pytest fixtures для тестов панели
"""
import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace

import asyncssh
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from database.models import Base, Subscriber, ServerGroup, Node
from services.cache_service import MemoryCache
from services.encryption_service import EncryptionService

TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"


@pytest.fixture
async def async_engine():
    """In-memory SQLite для тестов"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Фабрика сессий поверх тестового движка"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture
async def session(session_factory):
    """Async session для тестов"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def encryption():
    return EncryptionService(TEST_ENCRYPTION_KEY)


@pytest.fixture
async def group_limit_3(session):
    """Группа с лимитом 3 устройства"""
    group = ServerGroup(name="Европа", max_devices=3)
    session.add(group)
    await session.commit()
    await session.refresh(group)
    return group


@pytest.fixture
async def subscriber(session):
    """Активный подписчик без лимитов"""
    sub = Subscriber(
        user_id="alice",
        username="alice",
        password="stored-secret",
        enabled=True,
    )
    session.add(sub)
    await session.commit()
    await session.refresh(sub)
    return sub


@pytest.fixture
async def expired_subscriber(session):
    """Подписчик с истёкшей подпиской"""
    sub = Subscriber(
        user_id="bob",
        username="bob",
        password="bob-secret",
        enabled=True,
        expire_at=datetime.utcnow() - timedelta(days=1),
    )
    session.add(sub)
    await session.commit()
    return sub


@pytest.fixture
async def stats_nodes(session):
    """Три активные ноды со stats API"""
    nodes = [
        Node(name=f"node-{i}", ip=f"10.0.0.{i}", stats_port=9999, stats_secret=f"secret-{i}")
        for i in range(1, 4)
    ]
    session.add_all(nodes)
    await session.commit()
    return nodes


def make_node(**overrides):
    """Нода без БД (для пула, настройки и терминала)"""
    data = dict(
        id=1,
        name="de-1",
        ip="203.0.113.10",
        ssh_port=22,
        ssh_username="root",
        ssh_private_key=None,
        ssh_password="plain-password",
        port=443,
        port_range="20000-50000",
        domain=None,
        stats_port=9999,
        stats_secret="stats-secret",
        active=True,
    )
    data.update(overrides)
    return SimpleNamespace(**data)


# === ФЕЙКОВЫЙ SSH ===


class FakeTransport:
    def __init__(self):
        self.closing = False

    def is_closing(self):
        return self.closing


class FakeRunResult:
    def __init__(self, exit_status=0, stdout="", stderr=""):
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class FakeSFTPFile:
    def __init__(self, sftp, path, mode):
        self.sftp = sftp
        self.path = path
        self.mode = mode

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def write(self, data):
        self.sftp.files[self.path] = data

    async def read(self):
        if self.path not in self.sftp.files:
            raise asyncssh.SFTPNoSuchFile(f"{self.path} not found")
        return self.sftp.files[self.path]


class FakeSFTP:
    def __init__(self, files):
        self.files = files
        self.exited = False

    def open(self, path, mode="r"):
        return FakeSFTPFile(self, path, mode)

    def exit(self):
        self.exited = True


class FakeConnection:
    """Минимальная замена asyncssh.SSHClientConnection"""

    def __init__(self, handler=None):
        self._transport = FakeTransport()
        self.handler = handler
        self.commands: list[str] = []
        self.files: dict[str, str] = {}
        self.closed = False

    async def run(self, command, check=False):
        self.commands.append(command)
        if self.handler is not None:
            return await self.handler(command)
        return FakeRunResult(0, "ok\n")

    async def start_sftp_client(self):
        return FakeSFTP(self.files)

    def close(self):
        self.closed = True
        self._transport.closing = True


class FakeConnector:
    """Подставляется вместо asyncssh.connect"""

    def __init__(self, failures=0, error=None, delay=0.0, handler=None):
        self.failures = failures
        self.error = error or OSError("connection refused")
        self.delay = delay
        self.handler = handler
        self.calls: list[dict] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, client_factory=None, **options):
        self.calls.append(options)
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.failures:
            raise self.error
        conn = FakeConnection(self.handler)
        self.connections.append(conn)
        return conn


@pytest.fixture
def connector():
    return FakeConnector()
