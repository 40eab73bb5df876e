"""
Field-level encryption for task notes and transcriptions.

CRITICAL SECURITY REQUIREMENTS:
- notes and transcription may contain customer PII and are stored encrypted
- All encrypt/decrypt of those fields MUST go through FieldEncryptor
- Each field gets its own key, derived with HKDF-SHA256 from
  FIELD_ENCRYPTION_KEY (info=b"field:<name>"), so ciphertext from one field
  cannot be decrypted as another
- Production refuses to start without a key (see config.Settings)

Stored format: "enc:v1:" + Fernet token.

Usage:
    encryptor = FieldEncryptor(settings.field_encryption_key)
    stored = encryptor.encrypt("notes", "Call client about renewal")
    encryptor.decrypt("notes", stored)  # -> "Call client about renewal"
"""

import base64
import binascii
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:v1:"

# Fields of a todo that hold ciphertext at rest
ENCRYPTED_TODO_FIELDS = ("notes", "transcription")


class EncryptionError(Exception):
    """Raised when a value cannot be encrypted."""
    pass


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)


def _master_key_bytes(master_key: str) -> bytes:
    """A 64-char hex key is used as raw bytes; any other string as UTF-8."""
    if len(master_key) == 64:
        try:
            return binascii.unhexlify(master_key)
        except binascii.Error:
            pass
    return master_key.encode("utf-8")


class FieldEncryptor:
    """Per-field Fernet encryption keyed from one master key."""

    def __init__(self, master_key: Optional[str]):
        self._master_key = _master_key_bytes(master_key) if master_key else None
        self._fernets: dict[str, Fernet] = {}
        self._warned = False

    @property
    def enabled(self) -> bool:
        return self._master_key is not None

    def _fernet(self, field_name: str) -> Fernet:
        fernet = self._fernets.get(field_name)
        if fernet is None:
            derived = HKDF(
                algorithm=hashes.SHA256(),
                length=32,
                salt=None,
                info=f"field:{field_name}".encode("utf-8"),
            ).derive(self._master_key)
            fernet = Fernet(base64.urlsafe_b64encode(derived))
            self._fernets[field_name] = fernet
        return fernet

    def encrypt(self, field_name: str, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a value for storage.

        Every non-empty value is encrypted, including one that happens to
        start with the prefix. Empty values are returned unchanged. Without a
        key the plaintext is returned and an error is logged once.
        """
        if not plaintext:
            return plaintext

        if not self.enabled:
            if not self._warned:
                logger.error(
                    "FIELD_ENCRYPTION_KEY is not set - PII fields are stored in plaintext",
                    extra={"field": field_name},
                )
                self._warned = True
            return plaintext

        try:
            token = self._fernet(field_name).encrypt(plaintext.encode("utf-8"))
        except Exception as e:
            logger.error("Field encryption failed", extra={"field": field_name, "error": str(e)})
            raise EncryptionError(f"Cannot encrypt field {field_name}") from e
        return ENCRYPTED_PREFIX + token.decode("ascii")

    def decrypt(self, field_name: str, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value.

        Values without the prefix are returned as-is. A value that cannot be
        decrypted (wrong key, corrupted token) is returned as stored.
        """
        if not value or not is_encrypted(value):
            return value

        if not self.enabled:
            logger.warning(
                "Cannot decrypt field - FIELD_ENCRYPTION_KEY not configured",
                extra={"field": field_name},
            )
            return value

        try:
            token = value[len(ENCRYPTED_PREFIX):].encode("ascii")
            return self._fernet(field_name).decrypt(token).decode("utf-8")
        except (InvalidToken, UnicodeError):
            logger.error("Field decryption failed", extra={"field": field_name})
            return value

    def encrypt_fields(self, data: dict, field_names=ENCRYPTED_TODO_FIELDS) -> dict:
        result = dict(data)
        for name in field_names:
            if isinstance(result.get(name), str):
                result[name] = self.encrypt(name, result[name])
        return result

    def decrypt_fields(self, data: dict, field_names=ENCRYPTED_TODO_FIELDS) -> dict:
        result = dict(data)
        for name in field_names:
            if isinstance(result.get(name), str):
                result[name] = self.decrypt(name, result[name])
        return result
