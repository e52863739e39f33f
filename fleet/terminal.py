"""
Веб-терминал: SSH shell ноды через WebSocket.

У каждой сессии своё соединение (не из пула), PTY xterm-256color 120x30.
"""

import asyncio
import codecs
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import asyncssh

from .ssh_pool import build_connect_options, node_label

logger = logging.getLogger(__name__)

TERM_TYPE = "xterm-256color"
TERM_COLS = 120
TERM_ROWS = 30
READ_CHUNK = 4096

Send = Callable[[dict], Awaitable[Any]]


@dataclass
class TerminalSession:
    """Открытая терминальная сессия"""
    session_id: str
    node_name: str
    conn: Any
    process: Any
    send: Send
    tasks: list[asyncio.Task] = field(default_factory=list)
    closed: bool = False


class TerminalManager:
    """Реестр терминальных сессий"""

    def __init__(
        self,
        decrypt: Optional[Callable[[str], str]] = None,
        connector: Optional[Callable[..., Any]] = None,
        connect_timeout: float = 30.0,
        keepalive_interval: float = 30.0,
    ):
        self.decrypt = decrypt or (lambda value: value)
        self._connector = connector or asyncssh.connect
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.sessions: dict[str, TerminalSession] = {}

    async def create_session(self, session_id: str, node, send: Send) -> TerminalSession:
        """
        Подключиться к ноде и открыть интерактивный shell.

        Args:
            session_id: ID сессии (уникален на WebSocket)
            node: нода
            send: корутина отправки сообщения клиенту

        Raises:
            CredentialError, asyncssh.Error, OSError, asyncio.TimeoutError
        """
        name = node_label(node)
        options = build_connect_options(node, self.decrypt, self.keepalive_interval)

        conn = await asyncio.wait_for(self._connector(**options), timeout=self.connect_timeout)
        try:
            process = await conn.create_process(
                term_type=TERM_TYPE,
                term_size=(TERM_COLS, TERM_ROWS),
                encoding=None,
            )
        except (asyncssh.Error, OSError):
            conn.close()
            raise

        session = TerminalSession(
            session_id=session_id,
            node_name=name,
            conn=conn,
            process=process,
            send=send,
        )
        self.sessions[session_id] = session
        session.tasks = [
            asyncio.create_task(self._pump(session, process.stdout, primary=True)),
            asyncio.create_task(self._pump(session, process.stderr, primary=False)),
        ]

        logger.info(f"Terminal: подключено к {name} ({node.ip}) [session {session_id}]")
        return session

    async def _pump(self, session: TerminalSession, stream, primary: bool):
        """Вывод SSH → клиент. Конец stdout закрывает сессию."""
        reason = "Stream closed"
        # UTF-8 символ может прийти разрезанным между чтениями
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await stream.read(READ_CHUNK)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    await self._send(session, {"type": "output", "data": text})
        except asyncio.CancelledError:
            raise
        except (asyncssh.Error, OSError) as e:
            reason = f"Connection lost: {e}"
            primary = True

        if primary and not session.closed:
            logger.info(f"Terminal: поток закрыт для {session.node_name} ({reason})")
            await self.close_session(session.session_id)
            await self._send(session, {"type": "closed", "reason": reason})

    @staticmethod
    async def _send(session: TerminalSession, message: dict):
        try:
            await session.send(message)
        except Exception as e:
            logger.debug(f"Terminal: не удалось отправить в {session.session_id}: {e}")

    def write(self, session_id: str, data: Union[bytes, str]):
        """Ввод клиента → SSH. Байты передаются как есть."""
        session = self.sessions.get(session_id)
        if session is None or session.closed:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        session.process.stdin.write(data)

    def resize(self, session_id: str, cols: int, rows: int):
        """Изменить размер PTY"""
        session = self.sessions.get(session_id)
        if session is None or session.closed:
            return
        session.process.change_terminal_size(int(cols), int(rows))

    async def close_session(self, session_id: str):
        """Закрыть поток и соединение, удалить из реестра"""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        session.closed = True

        current = asyncio.current_task()
        for task in session.tasks:
            if task is not current and not task.done():
                task.cancel()

        try:
            session.process.close()
        except (asyncssh.Error, OSError) as e:
            logger.debug(f"Terminal: ошибка закрытия процесса: {e}")
        session.conn.close()

        logger.info(f"Terminal: сессия {session_id} закрыта")

    def get_session(self, session_id: str) -> Optional[TerminalSession]:
        return self.sessions.get(session_id)

    async def close_all(self):
        """Закрыть все сессии (shutdown)"""
        if self.sessions:
            logger.info(f"Terminal: закрытие {len(self.sessions)} сессий")
        for session_id in list(self.sessions):
            await self.close_session(session_id)
