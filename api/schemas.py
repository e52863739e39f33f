"""
Pydantic схемы HTTP API панели.
"""
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AuthRequest(BaseModel):
    """Запрос авторизации от ноды Hysteria"""
    addr: Optional[str] = None   # IP:port клиента
    auth: Optional[str] = None   # "userId:password" или "userId"
    tx: Optional[float] = None   # bandwidth клиента, не используется

    @field_validator("tx", mode="before")
    @classmethod
    def ignore_bad_tx(cls, v):
        """Некорректный tx не должен ломать авторизацию"""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return v


class AuthResponse(BaseModel):
    """Ответ ноде: id только при успехе"""
    ok: bool
    id: Optional[str] = None


class SetupRequest(BaseModel):
    """Опции настройки ноды"""
    install_hysteria: bool = True
    setup_port_hopping: bool = True
    restart_service: bool = True


class SetupResponse(BaseModel):
    success: bool
    logs: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class NodeStatusResponse(BaseModel):
    node_id: int
    status: str  # online / offline / error


class NodeLogsResponse(BaseModel):
    success: bool
    logs: Optional[str] = None
    error: Optional[str] = None
