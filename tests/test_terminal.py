"""
Тесты веб-терминала
"""
import asyncio

import pytest

from conftest import make_node
from fleet.errors import CredentialError
from fleet.terminal import TerminalManager


class FakeStream:
    """Поток вывода процесса: куски, затем EOF"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()

    def feed(self, data: bytes):
        self.queue.put_nowait(data)

    def eof(self):
        self.queue.put_nowait(b"")

    async def read(self, n=-1):
        return await self.queue.get()


class FakeStdin:
    def __init__(self):
        self.written: list[bytes] = []

    def write(self, data):
        self.written.append(data)


class FakeProcess:
    def __init__(self):
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin()
        self.sizes: list[tuple[int, int]] = []
        self.closed = False

    def change_terminal_size(self, cols, rows):
        self.sizes.append((cols, rows))

    def close(self):
        self.closed = True


class FakeTerminalConnection:
    def __init__(self):
        self.process = FakeProcess()
        self.process_kwargs: dict = {}
        self.closed = False

    async def create_process(self, **kwargs):
        self.process_kwargs = kwargs
        return self.process

    def close(self):
        self.closed = True


class TerminalConnector:
    def __init__(self):
        self.connections: list[FakeTerminalConnection] = []
        self.options: list[dict] = []

    async def __call__(self, **options):
        self.options.append(options)
        conn = FakeTerminalConnection()
        self.connections.append(conn)
        return conn


class Outbox:
    def __init__(self):
        self.messages: list[dict] = []

    async def __call__(self, message: dict):
        self.messages.append(message)


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def terminal_connector():
    return TerminalConnector()


@pytest.fixture
def manager(terminal_connector):
    return TerminalManager(decrypt=lambda v: f"plain:{v}", connector=terminal_connector)


class TestTerminalSession:
    """Жизненный цикл сессии"""

    @pytest.mark.asyncio
    async def test_pty_settings(self, manager, terminal_connector):
        await manager.create_session("s1", make_node(ssh_password="enc"), Outbox())

        conn = terminal_connector.connections[0]
        assert conn.process_kwargs["term_type"] == "xterm-256color"
        assert conn.process_kwargs["term_size"] == (120, 30)
        assert conn.process_kwargs["encoding"] is None
        assert terminal_connector.options[0]["password"] == "plain:enc"
        assert manager.get_session("s1") is not None
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_output_forwarded(self, manager, terminal_connector):
        outbox = Outbox()
        await manager.create_session("s1", make_node(), outbox)
        process = terminal_connector.connections[0].process

        process.stdout.feed(b"hello")
        process.stderr.feed(b"warn")
        await settle()

        assert {"type": "output", "data": "hello"} in outbox.messages
        assert {"type": "output", "data": "warn"} in outbox.messages
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_input_and_resize(self, manager, terminal_connector):
        await manager.create_session("s1", make_node(), Outbox())
        process = terminal_connector.connections[0].process

        manager.write("s1", "ls\n")
        manager.resize("s1", 200, 50)

        assert process.stdin.written == [b"ls\n"]
        assert process.sizes == [(200, 50)]
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_binary_input_verbatim(self, manager, terminal_connector):
        """Половинки UTF-8 символа уходят в PTY без изменений"""
        await manager.create_session("s1", make_node(), Outbox())
        process = terminal_connector.connections[0].process

        encoded = "ж".encode("utf-8")
        manager.write("s1", encoded[:1])
        manager.write("s1", encoded[1:])

        assert b"".join(process.stdin.written) == encoded
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_split_utf8_output(self, manager, terminal_connector):
        outbox = Outbox()
        await manager.create_session("s1", make_node(), outbox)
        process = terminal_connector.connections[0].process

        encoded = "привет".encode("utf-8")
        process.stdout.feed(encoded[:3])
        process.stdout.feed(encoded[3:])
        await settle()

        text = "".join(m["data"] for m in outbox.messages if m["type"] == "output")
        assert text == "привет"
        await manager.close_all()

    @pytest.mark.asyncio
    async def test_stream_end_closes_session(self, manager, terminal_connector):
        outbox = Outbox()
        await manager.create_session("s1", make_node(), outbox)
        conn = terminal_connector.connections[0]

        conn.process.stdout.eof()
        await settle()

        assert manager.get_session("s1") is None
        assert conn.closed is True
        assert outbox.messages[-1] == {"type": "closed", "reason": "Stream closed"}

    @pytest.mark.asyncio
    async def test_unknown_session_is_noop(self, manager):
        manager.write("missing", "x")
        manager.resize("missing", 80, 24)
        await manager.close_session("missing")

    @pytest.mark.asyncio
    async def test_close_session(self, manager, terminal_connector):
        await manager.create_session("s1", make_node(), Outbox())
        conn = terminal_connector.connections[0]

        await manager.close_session("s1")

        assert manager.get_session("s1") is None
        assert conn.closed is True
        assert conn.process.closed is True

    @pytest.mark.asyncio
    async def test_close_all(self, manager, terminal_connector):
        await manager.create_session("a", make_node(), Outbox())
        await manager.create_session("b", make_node(id=2), Outbox())

        await manager.close_all()

        assert manager.sessions == {}
        assert all(conn.closed for conn in terminal_connector.connections)

    @pytest.mark.asyncio
    async def test_no_credentials(self, manager, terminal_connector):
        with pytest.raises(CredentialError):
            await manager.create_session("s1", make_node(ssh_password=None), Outbox())
        assert terminal_connector.connections == []
