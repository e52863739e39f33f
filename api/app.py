"""
FastAPI приложение панели.

- POST /api/auth — HTTP авторизация для нод Hysteria
- /api/nodes/... — операторский API (X-Admin-Token)
- /ws/terminal/{node_id} — веб-терминал
"""
import asyncio
import hmac
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import asyncssh
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from database.models import Node
from fleet import SSHPoolError, SetupOptions
from scheduler import setup_scheduler
from .schemas import (
    AuthRequest,
    AuthResponse,
    NodeLogsResponse,
    NodeStatusResponse,
    SetupRequest,
    SetupResponse,
)
from .state import AppState, build_state

logger = logging.getLogger(__name__)


def _token_matches(expected: str, provided: Optional[str]) -> bool:
    """Пустой ADMIN_TOKEN закрывает доступ полностью"""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def get_state(request: Request) -> AppState:
    return request.app.state.panel


async def require_admin(
    state: AppState = Depends(get_state),
    x_admin_token: Optional[str] = Header(None),
):
    if not _token_matches(state.admin_token, x_admin_token):
        raise HTTPException(status_code=403, detail="Forbidden")


async def _load_node(state: AppState, node_id: int) -> Node:
    async with state.session_factory() as session:
        node = await session.get(Node, node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Нода не найдена")
    return node


def create_app(state: Optional[AppState] = None, start_scheduler: bool = True) -> FastAPI:
    """
    Создать приложение.

    Args:
        state: готовое состояние (тесты); по умолчанию собирается из config
        start_scheduler: запускать ли проверку статуса нод
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        panel = app.state.panel
        if panel is None:
            from config import config
            from database.connection import async_session

            panel = app.state.panel = build_state(config, async_session)

        panel.pool.start()
        if start_scheduler:
            panel.scheduler = setup_scheduler(
                panel.provisioner, panel.session_factory, panel.sync_interval
            )
        logger.info("🚀 Панель запущена")

        try:
            yield
        finally:
            await panel.close()
            logger.info("👋 Панель остановлена")

    app = FastAPI(
        title="Hysteria Panel",
        description="Авторизация клиентов и управление нодами",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.panel = state

    # === АВТОРИЗАЦИЯ НОД ===

    @app.post("/api/auth", response_model=AuthResponse, response_model_exclude_none=True)
    async def auth(request: Request):
        """Всегда 200: нода смотрит только на поле ok"""
        panel: AppState = request.app.state.panel
        try:
            payload = AuthRequest.model_validate(await request.json())
        except (ValidationError, ValueError):
            payload = AuthRequest()

        panel.requests.hit()
        verdict = await panel.gateway.authorize(payload.addr, payload.auth, payload.tx)
        return JSONResponse(verdict.to_response())

    # === ОПЕРАТОРСКИЙ API ===

    @app.post(
        "/api/nodes/{node_id}/setup",
        response_model=SetupResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_admin)],
    )
    async def setup_node(
        node_id: int,
        options: Optional[SetupRequest] = None,
        panel: AppState = Depends(get_state),
    ):
        node = await _load_node(panel, node_id)
        options = options or SetupRequest()
        result = await panel.provisioner.setup_node(node, SetupOptions(**options.model_dump()))
        return result.to_dict()

    @app.get(
        "/api/nodes/{node_id}/status",
        response_model=NodeStatusResponse,
        dependencies=[Depends(require_admin)],
    )
    async def node_status(node_id: int, panel: AppState = Depends(get_state)):
        node = await _load_node(panel, node_id)
        status = await panel.provisioner.check_node_status(node)

        async with panel.session_factory() as session:
            stored = await session.get(Node, node_id)
            if stored is not None:
                stored.status = status
                stored.last_check = datetime.utcnow()
                await session.commit()

        return NodeStatusResponse(node_id=node_id, status=status)

    @app.get(
        "/api/nodes/{node_id}/logs",
        response_model=NodeLogsResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_admin)],
    )
    async def node_logs(
        node_id: int,
        lines: int = Query(50, ge=1, le=1000),
        panel: AppState = Depends(get_state),
    ):
        node = await _load_node(panel, node_id)
        return await panel.provisioner.get_node_logs(node, lines)

    @app.get("/api/pool", dependencies=[Depends(require_admin)])
    async def pool_stats(panel: AppState = Depends(get_state)):
        return panel.pool.get_stats()

    @app.get("/api/stats", dependencies=[Depends(require_admin)])
    async def panel_stats(panel: AppState = Depends(get_state)):
        """Нагрузка на авторизацию и состояние SSH пула"""
        return {"auth": panel.requests.get_stats(), "pool": panel.pool.get_stats()}

    # === ВЕБ-ТЕРМИНАЛ ===

    @app.websocket("/ws/terminal/{node_id}")
    async def terminal(websocket: WebSocket, node_id: int, token: Optional[str] = None):
        panel: AppState = websocket.app.state.panel
        provided = token or websocket.headers.get("x-admin-token")
        if not _token_matches(panel.admin_token, provided):
            await websocket.close(code=1008)
            return

        await websocket.accept()

        async with panel.session_factory() as session:
            node = await session.get(Node, node_id)
        if node is None:
            await websocket.send_json({"type": "closed", "reason": "Node not found"})
            await websocket.close()
            return

        session_id = uuid.uuid4().hex
        try:
            await panel.terminals.create_session(session_id, node, websocket.send_json)
        except (SSHPoolError, asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Terminal: не удалось подключиться к {node.name}: {e}")
            await websocket.send_json({"type": "closed", "reason": f"Connection failed: {e}"})
            await websocket.close()
            return

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    panel.terminals.write(session_id, message["bytes"])
                elif message.get("text") is not None:
                    _handle_terminal_text(panel, session_id, message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            await panel.terminals.close_session(session_id)

    return app


def _handle_terminal_text(panel: AppState, session_id: str, text: str):
    """JSON сообщение клиента: input или resize"""
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug(f"Terminal: не JSON сообщение в {session_id}")
        return
    if not isinstance(data, dict):
        return

    if data.get("type") == "input":
        panel.terminals.write(session_id, str(data.get("data", "")))
    elif data.get("type") == "resize":
        try:
            panel.terminals.resize(session_id, int(data["cols"]), int(data["rows"]))
        except (KeyError, TypeError, ValueError):
            logger.debug(f"Terminal: некорректный resize в {session_id}")
