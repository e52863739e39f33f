"""
Ошибки работы с нодами по SSH.
"""


class SSHPoolError(Exception):
    """Базовая ошибка SSH слоя"""


class TransportError(SSHPoolError):
    """Ошибка соединения, выполнения команды или передачи файла"""


class CredentialError(SSHPoolError):
    """У ноды не настроен ни ключ, ни пароль"""


class OperationTimeout(SSHPoolError, TimeoutError):
    """Подключение или команда не уложились в таймаут"""


class PoolClosedError(SSHPoolError):
    """Пул остановлен (shutdown), новые соединения не выдаются"""
