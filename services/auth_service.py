"""
HTTP авторизация клиентов Hysteria 2.

Ноды обращаются сюда при каждом подключении клиента.
Проверки идут в фиксированном порядке, первая неудача — отказ.
Любая внутренняя ошибка тоже отказ (безопаснее).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .entitlement_service import EntitlementCache, SubscriberEntitlement
from .session_service import SessionAccountant

logger = logging.getLogger(__name__)

UNLIMITED = -1


class DenyReason(str, Enum):
    """Причина отказа в авторизации"""
    EMPTY_AUTH = "empty_auth"
    NOT_FOUND = "not_found"
    DISABLED = "disabled"
    BAD_SECRET = "bad_secret"
    TRAFFIC_EXCEEDED = "traffic_exceeded"
    EXPIRED = "expired"
    DEVICE_LIMIT_EXCEEDED = "device_limit_exceeded"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class Verdict:
    """Результат авторизации: Allow(user_id) | Deny(reason)"""
    ok: bool
    user_id: Optional[str] = None
    reason: Optional[DenyReason] = None

    @classmethod
    def allow(cls, user_id: str) -> "Verdict":
        return cls(ok=True, user_id=user_id)

    @classmethod
    def deny(cls, reason: DenyReason, user_id: Optional[str] = None) -> "Verdict":
        return cls(ok=False, user_id=user_id, reason=reason)

    def to_response(self) -> dict:
        """Ответ для ноды. Детали отказа наружу не уходят."""
        if self.ok:
            return {"ok": True, "id": self.user_id}
        return {"ok": False}


def parse_auth(auth: Optional[str]) -> tuple[str, Optional[str]]:
    """Разобрать строку "userId:password" или "userId" """
    auth = (auth or "").strip()
    user_id, sep, password = auth.partition(":")
    return user_id, (password or None)


def resolve_device_limit(subscriber: SubscriberEntitlement) -> Optional[int]:
    """
    Эффективный лимит устройств.

    - у подписчика > 0 → его лимит
    - у подписчика -1 → безлимит (группы не смотрим)
    - у подписчика 0 → минимальный ненулевой лимит среди групп
    Возвращает None, если лимита нет.
    """
    if subscriber.max_devices == UNLIMITED:
        return None
    if subscriber.max_devices > 0:
        return subscriber.max_devices

    group_limits = [g.max_devices for g in subscriber.groups if g.max_devices > 0]
    if group_limits:
        return min(group_limits)
    return None


class AuthorizationGateway:
    """Проверка подключения клиента"""

    def __init__(
        self,
        entitlements: EntitlementCache,
        sessions: SessionAccountant,
        derive_password: Callable[[str], str],
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.entitlements = entitlements
        self.sessions = sessions
        self.derive_password = derive_password
        self.now = now

    async def authorize(self, addr: Optional[str], auth: Optional[str], tx: Optional[float] = None) -> Verdict:
        """
        Проверить подключение.

        Args:
            addr: IP:port клиента
            auth: строка авторизации от клиента
            tx: bandwidth клиента (не используется, ограничение на стороне клиента)

        Returns:
            Verdict
        """
        try:
            verdict = await self._evaluate(auth)
        except Exception as e:
            logger.exception(f"Auth: ошибка при проверке ({addr}): {e}")
            verdict = Verdict.deny(DenyReason.INTERNAL_ERROR)

        self._log(verdict, addr)
        return verdict

    async def _evaluate(self, auth: Optional[str]) -> Verdict:
        user_id, password = parse_auth(auth)
        if not user_id:
            return Verdict.deny(DenyReason.EMPTY_AUTH)

        subscriber = await self.entitlements.get_subscriber(user_id)
        if subscriber is None:
            return Verdict.deny(DenyReason.NOT_FOUND, user_id)

        if not subscriber.enabled:
            return Verdict.deny(DenyReason.DISABLED, user_id)

        if password is not None:
            if password != self.derive_password(user_id) and password != subscriber.password:
                return Verdict.deny(DenyReason.BAD_SECRET, user_id)

        if subscriber.traffic_limit > 0 and subscriber.traffic_used >= subscriber.traffic_limit:
            return Verdict.deny(DenyReason.TRAFFIC_EXCEEDED, user_id)

        if subscriber.expire_at and subscriber.expire_at < self.now():
            return Verdict.deny(DenyReason.EXPIRED, user_id)

        max_devices = resolve_device_limit(subscriber)
        if max_devices is not None:
            current = await self.sessions.count(user_id)
            if current >= max_devices:
                logger.debug(f"Auth: {user_id} онлайн {current}/{max_devices}")
                return Verdict.deny(DenyReason.DEVICE_LIMIT_EXCEEDED, user_id)

        return Verdict.allow(user_id)

    @staticmethod
    def _log(verdict: Verdict, addr: Optional[str]):
        """Одна запись в лог на каждый запрос"""
        if verdict.ok:
            logger.info(f"Auth: ✅ reason=allow user={verdict.user_id} addr={addr}")
        else:
            logger.warning(f"Auth: ❌ reason={verdict.reason.value} user={verdict.user_id or '-'} addr={addr}")
