"""
Генератор конфигов для нод Hysteria 2.

Авторизация HTTP (запросы идут на панель), TLS либо ACME — никогда оба.
"""

import logging
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = "/etc/hysteria/config.yaml"
CERT_PATH = "/etc/hysteria/cert.pem"
KEY_PATH = "/etc/hysteria/key.pem"
ACME_DIR = "/etc/hysteria/acme"

DEFAULT_MAIN_PORT = 443
DEFAULT_STATS_PORT = 9999

MASQUERADE_URL = "https://www.google.com"
BLOCKED_ACL = [
    "reject(geoip:cn)",
    "reject(geoip:private)",
]


class ConfigConflictError(ValueError):
    """В конфиге одновременно tls и acme"""


def build_node_config(node, auth_url: str, acme_email: Optional[str] = None) -> dict:
    """
    Собрать конфиг ноды как dict.

    Args:
        node: нода (port, domain, stats_port, stats_secret)
        auth_url: URL HTTP авторизации панели
        acme_email: email для Let's Encrypt (по умолчанию acme@<domain>)
    """
    config = {
        # Слушаем на основном порту
        "listen": f":{node.port or DEFAULT_MAIN_PORT}",

        # Sniffing для определения протокола
        "sniff": {
            "enable": True,
            "timeout": "2s",
            "rewriteDomain": False,
            "tcpPorts": "80,443,8000-9000",
            "udpPorts": "443,80,53",
        },

        "quic": {
            "initStreamReceiveWindow": 8388608,     # 8MB
            "maxStreamReceiveWindow": 8388608,      # 8MB
            "initConnReceiveWindow": 20971520,      # 20MB
            "maxConnReceiveWindow": 20971520,       # 20MB
            "maxIdleTimeout": "60s",
            "maxIncomingStreams": 256,
            "disablePathMTUDiscovery": False,
        },

        "auth": {
            "type": "http",
            "http": {
                "url": auth_url,
                "insecure": False,
            },
        },

        # Bandwidth ограничивается на стороне клиента
        "ignoreClientBandwidth": False,

        # Маскировка под обычный HTTPS сервер
        "masquerade": {
            "type": "proxy",
            "proxy": {
                "url": MASQUERADE_URL,
                "rewriteHost": True,
            },
        },

        "acl": {
            "inline": list(BLOCKED_ACL),
        },
    }

    # Есть домен: ACME, иначе самоподписанные файлы
    if node.domain:
        config["acme"] = {
            "domains": [node.domain],
            "email": acme_email or f"acme@{node.domain}",
            "ca": "letsencrypt",
            "listenHost": "0.0.0.0",
            "dir": ACME_DIR,
        }
    else:
        config["tls"] = {
            "cert": CERT_PATH,
            "key": KEY_PATH,
        }

    # API статистики (0.0.0.0 чтобы панель могла подключиться извне)
    if node.stats_port and node.stats_secret:
        config["trafficStats"] = {
            "listen": f":{node.stats_port}",
            "secret": node.stats_secret,
        }

    return config


def render_config(config: dict) -> str:
    """Сериализовать конфиг в YAML"""
    if "tls" in config and "acme" in config:
        raise ConfigConflictError("tls и acme нельзя использовать одновременно")
    return yaml.safe_dump(config, sort_keys=False, allow_unicode=True)


def generate_node_config(node, auth_url: str, acme_email: Optional[str] = None) -> str:
    """Сгенерировать YAML конфиг для ноды"""
    return render_config(build_node_config(node, auth_url, acme_email))


def parse_port_range(port_range: Optional[str]) -> Optional[tuple[int, int]]:
    """"20000-50000" → (20000, 50000), либо None если диапазон некорректен"""
    if not port_range or "-" not in port_range:
        return None
    start_raw, _, end_raw = port_range.partition("-")
    try:
        start, end = int(start_raw.strip()), int(end_raw.strip())
    except ValueError:
        logger.warning(f"NodeSetup: некорректный диапазон портов: {port_range!r}")
        return None
    if not (0 < start <= end <= 65535):
        logger.warning(f"NodeSetup: диапазон портов вне допустимых значений: {port_range!r}")
        return None
    return start, end


def port_hopping_script(port_range: Optional[str], main_port: int) -> str:
    """Скрипт NAT редиректа диапазона UDP портов на основной порт"""
    parsed = parse_port_range(port_range)
    if parsed is None:
        return ""
    start, end = parsed

    return f"""
echo "=== Setting up port hopping {start}-{end} -> {main_port} ==="

# Определяем интерфейс
IFACE=$(ip route | grep default | awk '{{print $5}}' | head -1)
[ -z "$IFACE" ] && IFACE="eth0"
echo "Using interface: $IFACE"

# Удаляем старое правило если есть
iptables -t nat -D PREROUTING -i $IFACE -p udp --dport {start}:{end} -j REDIRECT --to-port {main_port} 2>/dev/null || true

iptables -t nat -A PREROUTING -i $IFACE -p udp --dport {start}:{end} -j REDIRECT --to-port {main_port}
echo "✓ iptables rule added"

# Сохраняем правила
if command -v netfilter-persistent &> /dev/null; then
    netfilter-persistent save
    echo "✓ Rules saved with netfilter-persistent"
elif [ -f /etc/debian_version ]; then
    apt-get install -y iptables-persistent 2>/dev/null || true
    netfilter-persistent save 2>/dev/null || true
    echo "✓ Attempted to save rules"
fi

echo "✓ Port hopping configured!"
"""
