"""
SSH пул соединений с нодами.

- Переиспользование соединений (экономия ~200-500ms на handshake)
- Lazy connection (создаётся при первом запросе)
- Auto-cleanup idle соединений
- Keepalive для поддержания соединений через NAT
- Retry с экспоненциальным backoff при подключении
- Graceful shutdown
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Optional

import asyncssh

from .errors import CredentialError, OperationTimeout, PoolClosedError, TransportError

logger = logging.getLogger(__name__)


def node_key(node) -> str:
    """Ключ ноды в пуле"""
    return str(node.id)


def node_label(node) -> str:
    return getattr(node, "name", None) or node_key(node)


def build_connect_options(
    node,
    decrypt: Callable[[str], str],
    keepalive_interval: float = 30.0,
) -> dict[str, Any]:
    """
    Параметры asyncssh.connect для ноды.

    Приоритет: приватный ключ, затем пароль (хранится зашифрованным).
    """
    options: dict[str, Any] = {
        "host": node.ip,
        "port": getattr(node, "ssh_port", None) or 22,
        "username": getattr(node, "ssh_username", None) or "root",
        "known_hosts": None,  # Отключаем проверку (ноды добавляет админ)
        "keepalive_interval": keepalive_interval,
        "keepalive_count_max": 3,
    }

    if getattr(node, "ssh_private_key", None):
        try:
            options["client_keys"] = [asyncssh.import_private_key(node.ssh_private_key)]
        except (asyncssh.KeyImportError, ValueError) as e:
            raise CredentialError(f"{node_label(node)}: неверный SSH ключ: {e}") from e
    elif getattr(node, "ssh_password", None):
        options["password"] = decrypt(node.ssh_password)
        options["client_keys"] = ()  # Только пароль, ключи из ~/.ssh не пробуем
    else:
        raise CredentialError(f"{node_label(node)}: SSH ключ или пароль не настроены")

    return options


def _text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


@dataclass
class ExecResult:
    """Результат выполнения команды"""
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Весь вывод (для логов)"""
        if self.stderr:
            return f"{self.stdout}\n[STDERR]:\n{self.stderr}"
        return self.stdout


@dataclass
class PoolConfig:
    """Настройки пула (секунды)"""
    max_idle_time: float = 120.0       # 2 мин без активности → закрыть
    keepalive_interval: float = 30.0
    connect_timeout: float = 15.0
    max_retries: int = 2
    retry_delay: float = 0.5           # задержка = retry_delay * 2^attempt
    cleanup_interval: float = 30.0


class _PoolClient(asyncssh.SSHClient):
    """Отмечает соединение мёртвым при обрыве"""

    def __init__(self):
        self.closed = False

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.closed = True


@dataclass
class PooledConnection:
    """Соединение в пуле"""
    conn: Any
    client: Optional[_PoolClient]
    node_id: str
    node_name: str
    host: str
    created_at: float
    last_used: float
    use_count: int = 1

    @property
    def is_alive(self) -> bool:
        """Транспорт открыт и пригоден для записи"""
        if self.client is not None and self.client.closed:
            return False
        transport = getattr(self.conn, "_transport", None)
        return transport is not None and not transport.is_closing()


class SSHPool:
    """
    Пул SSH соединений: не больше одного живого соединения на ноду.

    Операции с одной нодой выполняются последовательно (lock на ноду),
    с разными нодами — параллельно.
    """

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        decrypt: Optional[Callable[[str], str]] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or PoolConfig()
        self.decrypt = decrypt or (lambda value: value)
        self._connector = connector or asyncssh.connect

        # node_id -> PooledConnection
        self.connections: dict[str, PooledConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}

        self._cleanup_task: Optional[asyncio.Task] = None
        self._closed = False

    # === ЖИЗНЕННЫЙ ЦИКЛ ===

    def start(self):
        """Запустить фоновую очистку idle соединений. Остановленный пул не перезапускается."""
        self._ensure_open()
        if self._cleanup_task and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"SSHPool: запущен (idle {self.config.max_idle_time:.0f}с, "
            f"очистка каждые {self.config.cleanup_interval:.0f}с)"
        )

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"SSHPool: ошибка очистки: {e}")

    async def close_all(self):
        """Остановить очистку и закрыть все соединения"""
        logger.info(f"SSHPool: остановка ({len(self.connections)} соединений)")
        self._closed = True

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for node_id in list(self.connections):
            self.remove_connection(node_id, "shutdown")

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise PoolClosedError("SSH пул остановлен")

    def _lock_for(self, node_id: str) -> asyncio.Lock:
        lock = self._locks.get(node_id)
        if lock is None:
            lock = self._locks[node_id] = asyncio.Lock()
        return lock

    # === СОЕДИНЕНИЯ ===

    async def get_connection(self, node):
        """Получить живое соединение из пула или создать новое"""
        async with self._lock_for(node_key(node)):
            return await self._acquire(node)

    async def _acquire(self, node):
        self._ensure_open()
        node_id = node_key(node)

        existing = self.connections.get(node_id)
        if existing and existing.is_alive:
            existing.last_used = time.monotonic()
            existing.use_count += 1
            return existing.conn

        # Мёртвое соединение удаляем
        if existing:
            self.remove_connection(node_id, "dead")

        return await self.create_connection(node)

    async def create_connection(self, node, attempt: int = 0):
        """
        Создать новое SSH соединение и зарегистрировать в пуле.

        При ошибке повторяет до max_retries раз с задержкой
        retry_delay * 2^attempt. Отсутствие учётных данных не повторяется.
        """
        node_id = node_key(node)
        name = node_label(node)
        options = build_connect_options(node, self.decrypt, self.config.keepalive_interval)

        while True:
            client = _PoolClient()
            try:
                conn = await asyncio.wait_for(
                    self._connector(client_factory=lambda: client, **options),
                    timeout=self.config.connect_timeout,
                )
                break
            except (asyncio.TimeoutError, asyncssh.Error, OSError) as e:
                self.remove_connection(node_id, "superseded")

                if attempt < self.config.max_retries:
                    delay = self.config.retry_delay * (2 ** attempt)
                    attempt += 1
                    logger.warning(
                        f"SSHPool: {name}: retry {attempt}/{self.config.max_retries} через {delay:.1f}с ({e!r})"
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(f"SSHPool: ✗ не удалось подключиться к {name}: {e!r}")
                if isinstance(e, asyncio.TimeoutError):
                    raise OperationTimeout(
                        f"{name}: connection timeout ({self.config.connect_timeout:.0f}с)"
                    ) from e
                raise TransportError(f"{name}: {e}") from e

        if self._closed:
            conn.close()
            raise PoolClosedError("SSH пул остановлен во время подключения")

        # Прежняя запись закрывается, в пуле остаётся одна
        self.remove_connection(node_id, "superseded")
        now = time.monotonic()
        self.connections[node_id] = PooledConnection(
            conn=conn,
            client=client,
            node_id=node_id,
            node_name=name,
            host=node.ip,
            created_at=now,
            last_used=now,
        )
        logger.info(f"SSHPool: ✓ подключено {name} ({node.ip}) [pool: {len(self.connections)}]")
        return conn

    def remove_connection(self, node_id: str, reason: str = "unknown"):
        """Удалить соединение из пула и закрыть его"""
        entry = self.connections.pop(node_id, None)
        if entry is None:
            return
        try:
            entry.conn.close()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"SSHPool: ошибка закрытия {entry.node_name}: {e}")
        logger.debug(f"SSHPool: удалено {entry.node_name} ({reason})")

    def has_connection(self, node_id) -> bool:
        """Есть ли в пуле живое соединение"""
        entry = self.connections.get(str(node_id))
        return bool(entry and entry.is_alive)

    async def close(self, node_id):
        """Закрыть конкретное соединение"""
        self.remove_connection(str(node_id), "manual")

    def cleanup(self) -> int:
        """Удалить соединения без активности дольше max_idle_time"""
        now = time.monotonic()
        cleaned = 0

        for node_id, entry in list(self.connections.items()):
            idle = now - entry.last_used
            if idle > self.config.max_idle_time:
                self.remove_connection(node_id, f"idle {idle:.0f}s")
                cleaned += 1
            elif not entry.is_alive:
                self.remove_connection(node_id, "dead")
                cleaned += 1

        if cleaned:
            logger.info(f"SSHPool: очистка — удалено {cleaned} [pool: {len(self.connections)}]")
        return cleaned

    # === ОПЕРАЦИИ ===

    async def exec(self, node, command: str, timeout: float = 30.0) -> ExecResult:
        """
        Выполнить команду на ноде.

        Ошибка транспорта удаляет соединение из пула и пробрасывается.
        Таймаут соединение не трогает. Повторов на этом уровне нет.
        """
        node_id = node_key(node)
        async with self._lock_for(node_id):
            conn = await self._acquire(node)
            try:
                result = await asyncio.wait_for(conn.run(command, check=False), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise OperationTimeout(f"Exec timeout ({timeout:.0f}с): {command.strip()[:50]}") from e
            except (asyncssh.Error, OSError) as e:
                self.remove_connection(node_id, "exec error")
                raise TransportError(f"{node_label(node)}: exec failed: {e}") from e

        return ExecResult(
            exit_code=result.exit_status,
            stdout=_text(result.stdout),
            stderr=_text(result.stderr),
        )

    async def _open_sftp(self, conn, node):
        try:
            return await conn.start_sftp_client()
        except (asyncssh.Error, OSError) as e:
            self.remove_connection(node_key(node), "sftp error")
            raise TransportError(f"{node_label(node)}: SFTP недоступен: {e}") from e

    async def write_file(self, node, remote_path: str, content: str):
        """Записать файл через SFTP"""
        node_id = node_key(node)
        async with self._lock_for(node_id):
            conn = await self._acquire(node)
            sftp = await self._open_sftp(conn, node)
            try:
                async with sftp.open(remote_path, "w") as f:
                    await f.write(content)
            except asyncssh.SFTPError as e:
                raise TransportError(f"SFTP write {remote_path}: {e}") from e
            except (asyncssh.Error, OSError) as e:
                self.remove_connection(node_id, "sftp error")
                raise TransportError(f"SFTP write {remote_path}: {e}") from e
            finally:
                sftp.exit()

        logger.debug(f"SSHPool: записан {remote_path} на {node_label(node)}")

    async def read_file(self, node, remote_path: str) -> str:
        """Прочитать файл через SFTP"""
        node_id = node_key(node)
        async with self._lock_for(node_id):
            conn = await self._acquire(node)
            sftp = await self._open_sftp(conn, node)
            try:
                async with sftp.open(remote_path, "r") as f:
                    return _text(await f.read())
            except asyncssh.SFTPError as e:
                raise TransportError(f"SFTP read {remote_path}: {e}") from e
            except (asyncssh.Error, OSError) as e:
                self.remove_connection(node_id, "sftp error")
                raise TransportError(f"SFTP read {remote_path}: {e}") from e
            finally:
                sftp.exit()

    # === СТАТИСТИКА ===

    def get_stats(self) -> dict:
        """Статистика пула"""
        now = time.monotonic()
        return {
            "total": len(self.connections),
            "closed": self._closed,
            "config": asdict(self.config),
            "connections": [
                {
                    "node_id": entry.node_id,
                    "name": entry.node_name,
                    "host": entry.host,
                    "alive": entry.is_alive,
                    "idle_s": round(now - entry.last_used, 1),
                    "use_count": entry.use_count,
                    "uptime_s": round(now - entry.created_at, 1),
                }
                for entry in self.connections.values()
            ],
        }
