"""
Сервис шифрования данных.
Использует Fernet (AES-128-CBC) для защиты SSH паролей нод в БД
и HMAC-SHA256 для производных паролей подписчиков.
"""
import base64
import hashlib
import hmac
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

# Соль фиксирована: ключ должен восстанавливаться между перезапусками
_KDF_SALT = b"hysteria-panel-fernet"
_KDF_ITERATIONS = 390000

# Длина производного пароля подписчика (hex символов)
PASSWORD_LENGTH = 32


def derive_fernet_key(secret: str) -> bytes:
    """Получить Fernet ключ из произвольной строки ENCRYPTION_KEY"""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_KDF_SALT,
        iterations=_KDF_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


class EncryptionService:
    """Сервис для шифрования/дешифрования данных"""

    def __init__(self, encryption_key: str):
        self._key = encryption_key or ""
        self._fernet: Optional[Fernet] = None
        self._init_cipher()

    def _init_cipher(self):
        """Инициализация шифра из ключа"""
        if not self._key:
            logger.warning("ENCRYPTION_KEY не установлен! Шифрование отключено.")
            return

        try:
            # Ключ уже в формате Fernet
            self._fernet = Fernet(self._key.encode())
        except ValueError:
            self._fernet = Fernet(derive_fernet_key(self._key))

    @property
    def is_enabled(self) -> bool:
        """Проверить, включено ли шифрование"""
        return self._fernet is not None

    def encrypt(self, data: str) -> str:
        """
        Зашифровать строку.
        Если шифрование отключено — возвращает исходные данные.
        """
        if not self._fernet or not data:
            return data
        return self._fernet.encrypt(data.encode("utf-8")).decode("utf-8")

    def decrypt(self, encrypted_data: str) -> str:
        """
        Расшифровать строку.
        Если шифрование отключено или данные не зашифрованы — возвращает как есть.
        """
        if not self._fernet or not encrypted_data:
            return encrypted_data

        try:
            return self._fernet.decrypt(encrypted_data.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            # Возможно данные не зашифрованы (старые записи)
            logger.warning("Не удалось расшифровать значение, используем как есть")
            return encrypted_data

    def generate_password(self, subscriber_id: str) -> str:
        """Детерминированный пароль подписчика (HMAC от его ID)"""
        digest = hmac.new(
            self._key.encode("utf-8"),
            str(subscriber_id).encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return digest[:PASSWORD_LENGTH]

