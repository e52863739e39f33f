"""
Тесты подсчёта онлайн сессий по нодам
"""
import asyncio
import time

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from database.models import Node
from services.session_service import SNAPSHOT_KEY, SessionAccountant, SessionSnapshot, StatsTarget


def patch_nodes(monkeypatch, accountant, responses):
    """Подменить HTTP запрос к ноде: имя → dict | Exception | "slow" """
    calls = []

    async def fake_query(target: StatsTarget):
        calls.append(target.name)
        response = responses[target.name]
        if response == "slow":
            await asyncio.sleep(10)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(accountant, "_query_node", fake_query)
    return calls


class TestSnapshot:
    """Снимок сессий"""

    def test_fresh_within_ttl(self):
        snapshot = SessionSnapshot(counts={"a": 1}, fetched_at=100.0, ttl=5.0)
        assert snapshot.is_fresh(now=104.9) is True
        assert snapshot.is_fresh(now=105.0) is False

    def test_count_missing_user(self):
        assert SessionSnapshot().count("nobody") == 0

    def test_dict_roundtrip(self):
        snapshot = SessionSnapshot(counts={"a": 2}, fetched_at=1.5, ttl=5.0)
        assert SessionSnapshot.from_dict(snapshot.to_dict()) == snapshot


class TestFanOut:
    """Параллельный опрос нод"""

    @pytest.mark.asyncio
    async def test_timeout_node_ignored(self, monkeypatch, session_factory, cache, stats_nodes):
        """3 ноды, одна не ответила — сумма по остальным двум"""
        accountant = SessionAccountant(session_factory, cache, ttl=5.0, node_timeout=0.1)
        patch_nodes(monkeypatch, accountant, {
            "node-1": {"alice": {"tx": 1}, "bob": {"tx": 2}},
            "node-2": "slow",
            "node-3": {"alice": {"tx": 3}},
        })

        started = time.monotonic()
        snapshot = await accountant.get_snapshot()
        assert time.monotonic() - started < 2

        assert snapshot.count("alice") == 2
        assert snapshot.count("bob") == 1

    @pytest.mark.asyncio
    async def test_failed_node_ignored(self, monkeypatch, session_factory, cache, stats_nodes):
        accountant = SessionAccountant(session_factory, cache)
        patch_nodes(monkeypatch, accountant, {
            "node-1": {"alice": {}},
            "node-2": aiohttp.ClientConnectionError("refused"),
            "node-3": ValueError("bad json"),
        })

        assert await accountant.count("alice") == 1

    @pytest.mark.asyncio
    async def test_snapshot_cached(self, monkeypatch, session_factory, cache, stats_nodes):
        """Второй запрос в пределах TTL не опрашивает ноды"""
        accountant = SessionAccountant(session_factory, cache, ttl=60)
        calls = patch_nodes(monkeypatch, accountant, {
            "node-1": {"alice": {}},
            "node-2": {},
            "node-3": {},
        })

        assert await accountant.count("alice") == 1
        assert await accountant.count("alice") == 1
        assert len(calls) == 3

        await accountant.invalidate()
        await accountant.count("alice")
        assert len(calls) == 6

    @pytest.mark.asyncio
    async def test_snapshot_replaced_wholesale(self, monkeypatch, session_factory, cache, stats_nodes):
        accountant = SessionAccountant(session_factory, cache, ttl=60)
        responses = {"node-1": {"alice": {}}, "node-2": {}, "node-3": {}}
        patch_nodes(monkeypatch, accountant, responses)
        assert await accountant.count("alice") == 1

        responses["node-1"] = {"bob": {}}
        await accountant.invalidate()
        snapshot = await accountant.get_snapshot()
        assert snapshot.counts == {"bob": 1}

    @pytest.mark.asyncio
    async def test_only_nodes_with_stats(self, monkeypatch, session, session_factory, cache, stats_nodes):
        """Неактивные ноды и ноды без секрета не опрашиваются"""
        stats_nodes[0].active = False
        stats_nodes[1].stats_secret = ""
        await session.commit()

        accountant = SessionAccountant(session_factory, cache)
        calls = patch_nodes(monkeypatch, accountant, {"node-3": {"alice": {}}})
        assert await accountant.count("alice") == 1
        assert calls == ["node-3"]

    @pytest.mark.asyncio
    async def test_node_list_error_fails_open(self, monkeypatch, session_factory, cache):
        """Нет списка нод — считаем 0 сессий"""
        accountant = SessionAccountant(session_factory, cache)

        async def broken():
            raise RuntimeError("db down")

        monkeypatch.setattr(accountant, "_load_targets", broken)
        assert await accountant.count("alice") == 0
        assert await cache.get(SNAPSHOT_KEY) is None


class StatsServer:
    """Локальный trafficStats API: путь /online, проверка секрета"""

    def __init__(self, secret: str, online=None, slow: bool = False):
        self.secret = secret
        self.online = online if online is not None else {}
        self.slow = slow
        self.release = asyncio.Event()
        self.requests = []
        app = web.Application()
        app.router.add_get("/online", self.handle)
        self.server = test_utils.TestServer(app, host="127.0.0.1")

    async def handle(self, request: web.Request):
        self.requests.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") != self.secret:
            return web.json_response({"error": "unauthorized"}, status=401)
        if self.slow:
            await self.release.wait()
        return web.json_response(self.online)

    async def __aenter__(self):
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc):
        self.release.set()
        await self.server.close()


async def add_stats_node(session, name: str, server: StatsServer, secret: str = None) -> Node:
    node = Node(
        name=name,
        ip="127.0.0.1",
        stats_port=server.server.port,
        stats_secret=secret or server.secret,
    )
    session.add(node)
    await session.commit()
    return node


class TestStatsHttp:
    """Опрос настоящего HTTP stats API"""

    @pytest.mark.asyncio
    async def test_fan_out_over_http(self, session, session_factory, cache):
        """3 ноды по HTTP, одна зависла — сумма по двум остальным, без ожидания"""
        accountant = SessionAccountant(session_factory, cache, node_timeout=0.3)
        async with StatsServer("s1", {"alice": {"tx": 1}, "bob": {"tx": 2}}) as first, \
                StatsServer("s2", {"alice": {"tx": 9}}, slow=True) as stuck, \
                StatsServer("s3", {"alice": {"tx": 3}}) as third:
            await add_stats_node(session, "node-1", first)
            await add_stats_node(session, "node-2", stuck)
            await add_stats_node(session, "node-3", third)

            started = time.monotonic()
            snapshot = await accountant.get_snapshot()
            elapsed = time.monotonic() - started
            await accountant.close()

        assert elapsed < 2
        assert snapshot.count("alice") == 2
        assert snapshot.count("bob") == 1
        assert first.requests == ["s1"]
        assert third.requests == ["s3"]

    @pytest.mark.asyncio
    async def test_wrong_secret_not_counted(self, session, session_factory, cache):
        """401 от ноды — нода не учитывается"""
        accountant = SessionAccountant(session_factory, cache)
        async with StatsServer("right", {"alice": {}}) as server:
            await add_stats_node(session, "node-1", server, secret="wrong")
            count = await accountant.count("alice")
            await accountant.close()

        assert count == 0
        assert server.requests == ["wrong"]

    @pytest.mark.asyncio
    async def test_non_object_payload_ignored(self, session, session_factory, cache):
        accountant = SessionAccountant(session_factory, cache)
        async with StatsServer("s1", ["alice"]) as bad, StatsServer("s2", {"alice": {}}) as good:
            await add_stats_node(session, "node-1", bad)
            await add_stats_node(session, "node-2", good)
            count = await accountant.count("alice")
            await accountant.close()

        assert count == 1

    @pytest.mark.asyncio
    async def test_http_session_reused(self, session, session_factory, cache):
        accountant = SessionAccountant(session_factory, cache, ttl=0)
        async with StatsServer("s1", {"alice": {}}) as server:
            await add_stats_node(session, "node-1", server)
            await accountant.count("alice")
            http = accountant._http_session
            await accountant.count("alice")
            assert accountant._http_session is http
            await accountant.close()

        assert http.closed
        assert len(server.requests) == 2
