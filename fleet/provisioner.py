"""
Автоматическая настройка нод Hysteria через SSH.

Шаги выполняются строго по порядку через соединение из пула:
    1. Подключение                                  критично
    2. Установка Hysteria                           критично
    3. Сертификат: самоподписанный                  критично
                   подготовка ACME (есть домен)     предупреждение
    4. Загрузка config.yaml                         критично
    5. Port hopping                                 предупреждение
    6. Открытие портов в firewall                   предупреждение
    7. Перезапуск сервиса                           предупреждение

Результат: success + полный лог, в том числе при ошибке.
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from .config_generator import (
    ACME_DIR,
    CERT_PATH,
    CONFIG_PATH,
    DEFAULT_MAIN_PORT,
    DEFAULT_STATS_PORT,
    KEY_PATH,
    generate_node_config,
    port_hopping_script,
)
from .errors import SSHPoolError
from .ssh_pool import SSHPool, ExecResult, node_key, node_label

logger = logging.getLogger(__name__)

SERVICE_NAME = "hysteria-server"

INSTALL_SCRIPT = """#!/bin/bash
set -e

echo "=== Checking Hysteria installation ==="

if ! command -v hysteria &> /dev/null; then
    echo "Hysteria not found. Installing..."
    bash <(curl -fsSL https://get.hy2.sh/)
    echo "✓ Hysteria installed"
else
    echo "✓ Hysteria already installed"
fi

mkdir -p /etc/hysteria
echo "✓ Directory /etc/hysteria ready"

echo "Hysteria version:"
hysteria version
"""

CERT_CHECK_CMD = (
    f"[ -s {CERT_PATH} ] && [ -s {KEY_PATH} ] && "
    f"openssl x509 -in {CERT_PATH} -noout -subject -dates"
)

CERT_EC_CMD = f"""
command -v openssl &> /dev/null || (apt-get update && apt-get install -y openssl)
rm -f {CERT_PATH} {KEY_PATH} /tmp/ecparam.pem
mkdir -p /etc/hysteria
openssl ecparam -name prime256v1 -out /tmp/ecparam.pem
openssl req -x509 -nodes -newkey ec:/tmp/ecparam.pem \\
    -keyout {KEY_PATH} -out {CERT_PATH} \\
    -subj "/CN=bing.com" -days 36500 2>&1
rm -f /tmp/ecparam.pem
[ -s {CERT_PATH} ] && [ -s {KEY_PATH} ]
"""

CERT_RSA_CMD = f"""
rm -f {CERT_PATH} {KEY_PATH}
openssl req -x509 -nodes -newkey rsa:2048 \\
    -keyout {KEY_PATH} -out {CERT_PATH} \\
    -subj "/CN=bing.com" -days 36500 2>&1
[ -s {CERT_PATH} ] && [ -s {KEY_PATH} ]
"""

CERT_VERIFY_CMD = f"""
chmod 600 {KEY_PATH}
chmod 644 {CERT_PATH}
openssl x509 -in {CERT_PATH} -noout -subject -dates
"""

RESTART_SCRIPT = f"""
echo "=== Restarting Hysteria service ==="
systemctl enable {SERVICE_NAME} 2>/dev/null || true
systemctl restart {SERVICE_NAME}
RC=$?
sleep 3
echo "Service status:"
systemctl status {SERVICE_NAME} --no-pager -l || true
echo ""
echo "Journal logs (last 20 lines):"
journalctl -u {SERVICE_NAME} -n 20 --no-pager || true
exit $RC
"""


def acme_prepare_script(domain: str) -> str:
    """Права на директорию ACME и порт 80 для HTTP-01 challenge"""
    return f"""
echo "=== Setting up for ACME ==="

mkdir -p {ACME_DIR}
chmod 777 {ACME_DIR}
chmod 755 /etc/hysteria
echo "✓ ACME directory created with correct permissions"

if command -v iptables &> /dev/null; then
    iptables -I INPUT -p tcp --dport 80 -j ACCEPT 2>/dev/null || true
    iptables -I INPUT -p udp --dport 80 -j ACCEPT 2>/dev/null || true
    echo "✓ Port 80 opened in iptables"
fi

if command -v ufw &> /dev/null && ufw status | grep -q "active"; then
    ufw allow 80/tcp 2>/dev/null || true
    ufw allow 80/udp 2>/dev/null || true
    echo "✓ Port 80 opened in ufw"
fi

if ss -tlnp | grep -q ':80 '; then
    echo "⚠ Warning: Port 80 is already in use:"
    ss -tlnp | grep ':80 '
else
    echo "✓ Port 80 is free"
fi

echo "Note: Make sure DNS for {domain} points to this server's IP!"
"""


def firewall_script(main_port: int, stats_port: int) -> str:
    """Открыть основной порт и порт статистики"""
    return f"""
echo "=== Opening firewall ports ==="

if command -v iptables &> /dev/null; then
    iptables -I INPUT -p tcp --dport {main_port} -j ACCEPT 2>/dev/null || true
    iptables -I INPUT -p udp --dport {main_port} -j ACCEPT 2>/dev/null || true
    iptables -I INPUT -p tcp --dport {stats_port} -j ACCEPT 2>/dev/null || true
    echo "✓ Ports {main_port}, {stats_port} opened in iptables"
fi

if command -v ufw &> /dev/null && ufw status | grep -q "active"; then
    ufw allow {main_port}/tcp 2>/dev/null || true
    ufw allow {main_port}/udp 2>/dev/null || true
    ufw allow {stats_port}/tcp 2>/dev/null || true
    echo "✓ Ports {main_port}, {stats_port} opened in ufw"
fi

echo "✓ Firewall configured"
"""


class SetupStepError(Exception):
    """Критичный шаг настройки завершился ошибкой"""


@dataclass
class SetupOptions:
    install_hysteria: bool = True
    setup_port_hopping: bool = True
    restart_service: bool = True


@dataclass
class SetupResult:
    success: bool
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.error is None:
            data.pop("error")
        return data


class SetupLog:
    """Журнал настройки с временными метками"""

    def __init__(self, node_name: str):
        self.node_name = node_name
        self.lines: list[str] = []

    def __call__(self, message: str):
        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.lines.append(f"[{timestamp}] {message}")
        logger.info(f"NodeSetup: [{self.node_name}] {message}")

    def output(self, result: ExecResult):
        """Сырой вывод команды"""
        if result.output.strip():
            self.lines.append(result.output)

    def warning(self, message: str):
        self(f"⚠ {message}")


class NodeProvisioner:
    """Настройка нод через SSH пул"""

    def __init__(
        self,
        pool: SSHPool,
        auth_url: str,
        acme_email: Optional[str] = None,
        install_timeout: float = 600.0,
        step_timeout: float = 120.0,
    ):
        self.pool = pool
        self.auth_url = auth_url
        self.acme_email = acme_email
        self.install_timeout = install_timeout
        self.step_timeout = step_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, node_id: str) -> asyncio.Lock:
        lock = self._locks.get(node_id)
        if lock is None:
            lock = self._locks[node_id] = asyncio.Lock()
        return lock

    async def setup_node(self, node, options: Optional[SetupOptions] = None) -> SetupResult:
        """Полная настройка ноды (одна настройка на ноду одновременно)"""
        options = options or SetupOptions()
        async with self._lock_for(node_key(node)):
            return await self._run_setup(node, options)

    async def _run_setup(self, node, options: SetupOptions) -> SetupResult:
        log = SetupLog(node_label(node))
        log(f"Starting setup for {node_label(node)} ({node.ip})")
        log(f"Auth URL: {self.auth_url}")

        try:
            log("Connecting via SSH...")
            await self.pool.get_connection(node)
            log("✓ SSH connected")

            if options.install_hysteria:
                await self._install_hysteria(node, log)

            if node.domain:
                await self._prepare_acme(node, log)
            else:
                await self._ensure_self_signed_cert(node, log)

            await self._upload_config(node, log)

            if options.setup_port_hopping and node.port_range:
                await self._setup_port_hopping(node, log)

            await self._open_firewall(node, log)

            if options.restart_service:
                await self._restart_service(node, log)

            log("✅ Setup completed successfully!")
            return SetupResult(success=True, logs=log.lines)

        except Exception as e:
            if not isinstance(e, (SSHPoolError, SetupStepError)):
                logger.exception(f"NodeSetup: неожиданная ошибка на {node_label(node)}")
            log(f"❌ Error: {e}")
            return SetupResult(success=False, logs=log.lines, error=str(e))

    # === КРИТИЧНЫЕ ШАГИ ===

    async def _install_hysteria(self, node, log: SetupLog):
        log("Installing Hysteria...")
        result = await self.pool.exec(node, INSTALL_SCRIPT, timeout=self.install_timeout)
        log.output(result)
        if not result.ok:
            raise SetupStepError(f"Hysteria installation failed: exit code {result.exit_code}")
        log("✓ Hysteria installed")

    async def _ensure_self_signed_cert(self, node, log: SetupLog):
        log("Checking self-signed certificate...")
        check = await self.pool.exec(node, CERT_CHECK_CMD, timeout=self.step_timeout)
        if check.ok:
            log.output(check)
            log("✓ Valid certificate already exists")
            return

        log("Generating new certificate (EC prime256v1)...")
        generated = await self.pool.exec(node, CERT_EC_CMD, timeout=self.step_timeout)
        log.output(generated)
        if not generated.ok:
            log.warning("EC certificate failed, trying RSA...")
            generated = await self.pool.exec(node, CERT_RSA_CMD, timeout=self.step_timeout)
            log.output(generated)
            if not generated.ok:
                raise SetupStepError(f"Certificate generation failed: exit code {generated.exit_code}")

        verify = await self.pool.exec(node, CERT_VERIFY_CMD, timeout=self.step_timeout)
        log.output(verify)
        if not verify.ok:
            raise SetupStepError("Certificate verification failed")
        log("✓ Certificate ready")

    async def _upload_config(self, node, log: SetupLog):
        log("Uploading config...")
        content = generate_node_config(node, self.auth_url, self.acme_email)
        await self.pool.write_file(node, CONFIG_PATH, content)
        log(f"✓ Config uploaded to {CONFIG_PATH}")

        shown = content.replace(node.stats_secret, "***") if node.stats_secret else content
        log.lines.extend(["--- Config content ---", shown, "--- End config ---"])

    # === НЕКРИТИЧНЫЕ ШАГИ ===

    async def _best_effort(self, node, script: str, log: SetupLog, what: str) -> bool:
        """Выполнить шаг; ошибка превращается в предупреждение"""
        try:
            result = await self.pool.exec(node, script, timeout=self.step_timeout)
        except SSHPoolError as e:
            log.warning(f"{what} warning: {e}")
            return False
        log.output(result)
        if not result.ok:
            log.warning(f"{what} warning: exit code {result.exit_code}")
            return False
        return True

    async def _prepare_acme(self, node, log: SetupLog):
        log(f"Domain detected ({node.domain}), ACME will be used")
        log("Opening port 80 for ACME HTTP-01 challenge...")
        if await self._best_effort(node, acme_prepare_script(node.domain), log, "ACME preparation"):
            log("✓ ACME preparation done")

    async def _setup_port_hopping(self, node, log: SetupLog):
        script = port_hopping_script(node.port_range, node.port or DEFAULT_MAIN_PORT)
        if not script:
            log.warning(f"Port hopping skipped: invalid range {node.port_range!r}")
            return
        log(f"Setting up port hopping ({node.port_range})...")
        if await self._best_effort(node, script, log, "Port hopping setup"):
            log("✓ Port hopping configured")

    async def _open_firewall(self, node, log: SetupLog):
        main_port = node.port or DEFAULT_MAIN_PORT
        stats_port = node.stats_port or DEFAULT_STATS_PORT
        log(f"Opening firewall ports ({main_port}, {stats_port})...")
        if await self._best_effort(node, firewall_script(main_port, stats_port), log, "Firewall"):
            log("✓ Firewall ports opened")

    async def _restart_service(self, node, log: SetupLog):
        log("Restarting Hysteria service...")
        if await self._best_effort(node, RESTART_SCRIPT, log, "Service restart"):
            log("✓ Service restarted")

    # === СТАТУС И ЛОГИ ===

    async def check_node_status(self, node) -> str:
        """online / offline / error"""
        try:
            result = await self.pool.exec(node, f"systemctl is-active {SERVICE_NAME}", timeout=15)
        except SSHPoolError as e:
            logger.warning(f"NodeSetup: статус {node_label(node)} недоступен: {e}")
            return "error"
        return "online" if result.stdout.strip() == "active" else "offline"

    async def get_node_logs(self, node, lines: int = 50) -> dict:
        """Последние строки журнала Hysteria"""
        lines = max(1, min(int(lines), 1000))
        try:
            result = await self.pool.exec(
                node, f"journalctl -u {SERVICE_NAME} -n {lines} --no-pager", timeout=30
            )
        except SSHPoolError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "logs": result.output}
