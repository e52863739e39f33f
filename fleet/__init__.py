"""
Управление нодами Hysteria.

Компоненты:
- SSHPool: пул SSH соединений
- NodeProvisioner: автоматическая настройка нод
- TerminalManager: веб-терминал через WebSocket
- config_generator: YAML конфиги нод
"""

from .errors import (
    SSHPoolError,
    TransportError,
    CredentialError,
    OperationTimeout,
    PoolClosedError,
)
from .ssh_pool import SSHPool, PoolConfig, ExecResult
from .config_generator import ConfigConflictError, generate_node_config
from .provisioner import NodeProvisioner, SetupOptions, SetupResult
from .terminal import TerminalManager

__all__ = [
    "SSHPoolError",
    "TransportError",
    "CredentialError",
    "OperationTimeout",
    "PoolClosedError",
    "SSHPool",
    "PoolConfig",
    "ExecResult",
    "ConfigConflictError",
    "generate_node_config",
    "NodeProvisioner",
    "SetupOptions",
    "SetupResult",
    "TerminalManager",
]
