"""
Модели базы данных (SQLAlchemy ORM).
"""
import hashlib
import secrets
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, BigInteger, Text, DateTime, ForeignKey, JSON, Table, Column, event
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Базовый класс для всех моделей"""
    pass


# Группы серверов подписчика
subscriber_groups = Table(
    "subscriber_groups",
    Base.metadata,
    Column("subscriber_id", ForeignKey("subscribers.id", ondelete="CASCADE"), primary_key=True),
    Column("group_id", ForeignKey("server_groups.id", ondelete="CASCADE"), primary_key=True),
)

# Ноды, на которых зарегистрирован подписчик (пустой список = все ноды из групп)
subscriber_nodes = Table(
    "subscriber_nodes",
    Base.metadata,
    Column("subscriber_id", ForeignKey("subscribers.id", ondelete="CASCADE"), primary_key=True),
    Column("node_id", ForeignKey("nodes.id", ondelete="CASCADE"), primary_key=True),
)


class ServerGroup(Base):
    """Группа серверов (админ привязывает к ней ноды и подписчиков)"""
    __tablename__ = "server_groups"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True)  # "Европа", "Premium"
    description: Mapped[str] = mapped_column(Text, default="")
    active: Mapped[bool] = mapped_column(default=True)

    # Лимит одновременных устройств (0 = без лимита)
    max_devices: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Subscriber(Base):
    """Подписчик VPN"""
    __tablename__ = "subscribers"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)  # Основной идентификатор
    username: Mapped[str] = mapped_column(String(100), default="")

    # Токен для URL подписки (хэш, не палит user_id)
    subscription_token: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)

    # Пароль для Hysteria
    password: Mapped[str] = mapped_column(String(128))

    enabled: Mapped[bool] = mapped_column(default=False, index=True)

    # Статистика трафика (обновляется периодически)
    traffic_tx: Mapped[int] = mapped_column(BigInteger, default=0)  # Отправлено байт
    traffic_rx: Mapped[int] = mapped_column(BigInteger, default=0)  # Получено байт
    traffic_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    traffic_limit: Mapped[int] = mapped_column(BigInteger, default=0)  # 0 = безлимит
    max_devices: Mapped[int] = mapped_column(Integer, default=0)  # 0 = лимит группы, -1 = безлимит

    expire_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Отношения
    groups: Mapped[list["ServerGroup"]] = relationship(secondary=subscriber_groups, lazy="selectin")
    nodes: Mapped[list["Node"]] = relationship(secondary=subscriber_nodes, lazy="selectin")


@event.listens_for(Subscriber, "before_insert")
def _generate_subscription_token(mapper, connection, target: Subscriber):
    """Генерация subscription_token перед сохранением"""
    if not target.subscription_token:
        seed = f"{target.user_id}{secrets.token_hex(8)}"
        target.subscription_token = hashlib.sha256(seed.encode()).hexdigest()[:16]


class Node(Base):
    """Нода Hysteria 2"""
    __tablename__ = "nodes"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    ip: Mapped[str] = mapped_column(String(255))

    # SSH доступ (пароль хранится только в зашифрованном виде)
    ssh_port: Mapped[int] = mapped_column(Integer, default=22)
    ssh_username: Mapped[str] = mapped_column(String(50), default="root")
    ssh_private_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ssh_password: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Hysteria
    port: Mapped[int] = mapped_column(Integer, default=443)
    port_range: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # "20000-50000"
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # Есть домен → ACME

    # API статистики
    stats_port: Mapped[int] = mapped_column(Integer, default=9999)
    stats_secret: Mapped[str] = mapped_column(String(128), default="")

    active: Mapped[bool] = mapped_column(default=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default="unknown")  # online/offline/error/unknown
    last_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Settings(Base):
    """Настройки панели (единственная строка)"""
    __tablename__ = "settings"

    id: Mapped[str] = mapped_column(String(20), primary_key=True, default="settings")

    # Балансировка нагрузки: {"enabled": bool, "hide_overloaded": bool}
    load_balancing: Mapped[dict] = mapped_column(
        JSON, default=lambda: {"enabled": False, "hide_overloaded": False}
    )

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
