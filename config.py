"""
Конфигурация панели.
Все секреты загружаются из .env файла.
"""
import os
from dotenv import load_dotenv

# Загружаем переменные из .env
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


class Config:
    """Основная конфигурация"""

    # Домен панели (нужен для auth URL в конфигах нод)
    PANEL_DOMAIN: str = os.getenv("PANEL_DOMAIN", "")
    ACME_EMAIL: str = os.getenv("ACME_EMAIL", "")

    # Шифрование (SSH пароли нод, производные пароли подписчиков)
    ENCRYPTION_KEY: str = os.getenv("ENCRYPTION_KEY", "")

    # Токен для операторского API и веб-терминала
    ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "")

    # База данных
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///panel_database.db")

    # Redis (общий кэш для всех инстансов панели)
    USE_REDIS: bool = _env_bool("USE_REDIS", True)
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

    # Интервал синхронизации статусов нод (минуты)
    SYNC_INTERVAL: int = int(os.getenv("SYNC_INTERVAL", "2") or "2")

    # Настройки по умолчанию для нод
    DEFAULT_PORT_RANGE: str = "20000-50000"
    DEFAULT_MAIN_PORT: int = 443
    DEFAULT_STATS_PORT: int = 9999

    # SSH пул (секунды)
    SSH_MAX_IDLE_TIME: float = 120.0      # 2 мин без активности → закрыть
    SSH_KEEPALIVE_INTERVAL: float = 30.0  # keepalive каждые 30 сек
    SSH_CONNECT_TIMEOUT: float = 15.0
    SSH_MAX_RETRIES: int = 2
    SSH_RETRY_DELAY: float = 0.5          # база для экспоненциального backoff
    SSH_CLEANUP_INTERVAL: float = 30.0

    # Кэш авторизации (секунды)
    USER_CACHE_TTL: int = 60
    SETTINGS_CACHE_TTL: int = 30
    SESSIONS_CACHE_TTL: float = 5.0
    STATS_TIMEOUT: float = 2.0

    # HTTP сервер
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3000") or "3000")

    @property
    def BASE_URL(self) -> str:
        """Публичный URL (генерируется из домена)"""
        return f"https://{self.PANEL_DOMAIN}"

    @property
    def AUTH_URL(self) -> str:
        """URL HTTP авторизации, который прописывается в конфиг ноды"""
        return f"{self.BASE_URL}/api/auth"

    @classmethod
    def validate(cls) -> bool:
        """Проверка обязательных переменных"""
        errors = []

        for key in ("PANEL_DOMAIN", "ACME_EMAIL", "ENCRYPTION_KEY"):
            if not getattr(cls, key):
                errors.append(f"{key} не установлен")
        if cls.ENCRYPTION_KEY and len(cls.ENCRYPTION_KEY) < 32:
            errors.append("ENCRYPTION_KEY должен быть минимум 32 символа")
        if not cls.ADMIN_TOKEN:
            print("⚠️ ADMIN_TOKEN не установлен — операторский API и терминал закрыты")

        if errors:
            for error in errors:
                print(f"❌ Ошибка конфигурации: {error}")
            return False

        print("✅ Конфигурация загружена успешно")
        return True


# Создаём экземпляр конфигурации
config = Config()
