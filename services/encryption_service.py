"""
Шифрование SSH паролей серверов.
Использует Fernet (AES-128-CBC), пароль в БД хранится только в зашифрованном виде.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config import config

logger = logging.getLogger(__name__)

# Префикс отличает зашифрованные значения от старых записей в открытом виде
_PREFIX = "enc:"


class EncryptionService:
    """Шифрование/дешифрование секретов серверов"""

    def __init__(self, key: Optional[str] = None):
        encryption_key = key if key is not None else config.ENCRYPTION_KEY
        self._fernet: Optional[Fernet] = None

        if not encryption_key:
            logger.warning("⚠️ ENCRYPTION_KEY не установлен! SSH пароли хранятся без шифрования.")
            return

        try:
            self._fernet = Fernet(encryption_key.encode())
        except ValueError as e:
            logger.error(f"⚠️ Некорректный ENCRYPTION_KEY: {e}")

    @property
    def is_enabled(self) -> bool:
        """Проверить, включено ли шифрование"""
        return self._fernet is not None

    def encrypt(self, data: Optional[str]) -> Optional[str]:
        """Зашифровать строку. Без ключа возвращает как есть."""
        if not self._fernet or not data:
            return data
        return _PREFIX + self._fernet.encrypt(data.encode("utf-8")).decode("utf-8")

    def decrypt(self, stored: Optional[str]) -> Optional[str]:
        """
        Расшифровать строку.
        Незашифрованные значения (без префикса) возвращаются как есть.
        """
        if not stored or not stored.startswith(_PREFIX):
            return stored
        if not self._fernet:
            raise ValueError("Пароль зашифрован, но ENCRYPTION_KEY не установлен")

        try:
            return self._fernet.decrypt(stored[len(_PREFIX):].encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise ValueError("Не удалось расшифровать пароль: неверный ENCRYPTION_KEY") from e


_encryption: Optional[EncryptionService] = None


def get_encryption() -> EncryptionService:
    """Глобальный экземпляр (ленивая инициализация)"""
    global _encryption
    if _encryption is None:
        _encryption = EncryptionService()
    return _encryption


def generate_key() -> str:
    """Сгенерировать новый ключ шифрования"""
    return Fernet.generate_key().decode()
