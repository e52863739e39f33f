"""
Тесты шифрования SSH паролей и производных паролей подписчиков
"""
from cryptography.fernet import Fernet

from services.encryption_service import EncryptionService


class TestEncryption:
    """Fernet шифрование"""

    def test_roundtrip_with_passphrase(self):
        service = EncryptionService("x" * 40)
        encrypted = service.encrypt("ssh-password")
        assert encrypted != "ssh-password"
        assert service.decrypt(encrypted) == "ssh-password"

    def test_native_fernet_key(self):
        key = Fernet.generate_key().decode()
        service = EncryptionService(key)
        encrypted = service.encrypt("secret")
        assert Fernet(key.encode()).decrypt(encrypted.encode()) == b"secret"

    def test_same_passphrase_same_key(self):
        """Ключ восстанавливается после перезапуска"""
        encrypted = EncryptionService("y" * 40).encrypt("secret")
        assert EncryptionService("y" * 40).decrypt(encrypted) == "secret"

    def test_plaintext_passthrough(self):
        """Незашифрованные (старые) значения возвращаются как есть"""
        service = EncryptionService("z" * 40)
        assert service.decrypt("legacy-plain") == "legacy-plain"

    def test_disabled_without_key(self):
        service = EncryptionService("")
        assert service.is_enabled is False
        assert service.encrypt("data") == "data"
        assert service.decrypt("data") == "data"


class TestSubscriberPassword:
    """Производный пароль подписчика"""

    def test_deterministic(self):
        service = EncryptionService("k" * 40)
        assert service.generate_password("alice") == service.generate_password("alice")
        assert len(service.generate_password("alice")) == 32

    def test_depends_on_key_and_id(self):
        a = EncryptionService("a" * 40)
        b = EncryptionService("b" * 40)
        assert a.generate_password("alice") != a.generate_password("bob")
        assert a.generate_password("alice") != b.generate_password("alice")
