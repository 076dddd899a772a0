"""
Field-level encryption for reserver PII (guest name, guest email).

Uses Fernet (AES-128-CBC + HMAC-SHA256) with a process-wide data key obtained
once from get_or_create_data_key(). Without a key the cipher is disabled and
values are stored as plaintext, which keeps rows written before encryption was
switched on readable.
"""
from dataclasses import dataclass
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings
from app.core.errors import InternalError

logger = logging.getLogger("giftregistry.pii")


@dataclass(frozen=True)
class PlainText:
    value: str


@dataclass(frozen=True)
class CipherText:
    value: str


StoredText = PlainText | CipherText


class PiiCipher:
    def __init__(self, key: str | bytes | None = None) -> None:
        self._fernet: Fernet | None = None
        if key:
            try:
                self._fernet = Fernet(key)
            except (ValueError, TypeError) as exc:
                raise InternalError("PII encryption key is malformed") from exc

    @property
    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a PII string.

        Empty input stays empty: absent fields are never encrypted.
        """
        if not plaintext:
            return ""
        if self._fernet is None:
            raise InternalError("PII encryption is not configured")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            return ""
        if self._fernet is None:
            raise InternalError("PII encryption is not configured")
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.error("PII decryption failed: invalid ciphertext (wrong key or corrupted data)")
            raise InternalError("invalid ciphertext") from exc

    def seal(self, value: str | None) -> StoredText | None:
        """Choose the storage representation for a value that is about to be persisted."""
        if value is None:
            return None
        if self.enabled:
            return CipherText(self.encrypt(value))
        return PlainText(value)

    def reveal(self, stored: StoredText | None) -> str | None:
        if stored is None:
            return None
        if isinstance(stored, CipherText):
            return self.decrypt(stored.value)
        return stored.value


def get_or_create_data_key() -> str | None:
    """
    Resolve the data key: PII_ENCRYPTION_KEY first, then PII_KEY_FILE
    (generated on first use), otherwise None and encryption stays off.
    """
    if settings.pii_encryption_key:
        return settings.pii_encryption_key
    if not settings.pii_key_file:
        return None

    key_path = Path(settings.pii_key_file)
    if key_path.exists():
        return key_path.read_text(encoding="ascii").strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key().decode("ascii")
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="ascii") as handle:
        handle.write(key)
    logger.warning("Generated new PII data key at %s", key_path)
    return key


_cipher: PiiCipher | None = None


def get_cipher() -> PiiCipher:
    """Get or create the process-wide cipher."""
    global _cipher
    if _cipher is None:
        _cipher = PiiCipher(get_or_create_data_key())
        if not _cipher.enabled:
            logger.info("PII encryption disabled: guest contact fields are stored as plaintext")
    return _cipher


def reset_cipher() -> None:
    global _cipher
    _cipher = None
