from .connection import init_db, async_session
from .models import Base, Subscriber, ServerGroup, Node, Settings

__all__ = [
    "init_db",
    "async_session",
    "Base",
    "Subscriber",
    "ServerGroup",
    "Node",
    "Settings",
]
