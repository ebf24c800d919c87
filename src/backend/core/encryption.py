"""
Field-Level Envelope Encryption for sensitive evaluation data.

Every value is encrypted under its own random data key (DEK); the DEK is then
wrapped under the operator's master key (KEK) from ENCRYPTION_MASTER_KEY.

This module implements AES-256-GCM with:
- 256-bit keys, 128-bit IVs, 128-bit authentication tags
- a combined tag (value tag || key-wrap tag) stored with the value
- key rotation by re-wrapping DEKs only (ciphertext is untouched)

Threat model: database breach, backup/snapshot leak, DB administrator
browsing. Reading a comment requires both the stored document and the
server-side master key.
"""

import base64
import binascii
import re
import secrets
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any, Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import settings
from core.exceptions import ConfigurationError, DecryptionError, InputError
from models.documents import EncryptedValue

logger = structlog.get_logger(__name__)

KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16  # 128 bits
AUTH_TAG_LENGTH = 16  # 128 bits
FORMAT_VERSION = "1.0"

_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

# Single message for every failure cause (no padding/tag oracle).
_DECRYPTION_FAILED = "Decryption failed"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def _parse_master_key(master_key_hex: Optional[str]) -> Optional[bytes]:
    if not master_key_hex or not _HEX_KEY_PATTERN.match(master_key_hex):
        return None
    return bytes.fromhex(master_key_hex)


def _seal(key: bytes, plaintext: bytes) -> tuple[bytes, bytes, bytes]:
    """Encrypt with AES-256-GCM, returning (ciphertext, iv, tag)."""
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return sealed[:-AUTH_TAG_LENGTH], iv, sealed[-AUTH_TAG_LENGTH:]


def _open(key: bytes, ciphertext: bytes, iv: bytes, tag: bytes) -> bytes:
    """Decrypt with AES-256-GCM. Raises InvalidTag on any tampering."""
    return AESGCM(key).decrypt(iv, ciphertext + tag, None)


class EnvelopeCipher:
    """
    AES-256-GCM envelope encryption for single field values.

    The cipher is stateless apart from the master key and is safe to share
    between concurrent requests.
    """

    def __init__(self, master_key_hex: Optional[str] = None):
        """
        Initialize with a master key.

        Args:
            master_key_hex: 64 hex characters. If None or malformed, the
                cipher is unconfigured and every encrypt/decrypt raises
                ConfigurationError.
        """
        self._master_key = _parse_master_key(master_key_hex)

        if self._master_key is None:
            logger.warning(
                "envelope_encryption_disabled",
                reason="no_valid_master_key",
                message="Comments cannot be stored until ENCRYPTION_MASTER_KEY is set.",
            )

    def is_configured(self) -> bool:
        """True iff a syntactically valid 256-bit master key is available."""
        return self._master_key is not None

    def _require_master_key(self) -> bytes:
        if self._master_key is None:
            raise ConfigurationError(
                "ENCRYPTION_MASTER_KEY not configured. It must be 64 hex characters (256-bit key)."
            )
        return self._master_key

    def encrypt_value(self, plaintext: str) -> EncryptedValue:
        """
        Encrypt a plaintext string under a fresh data key.

        Raises:
            ConfigurationError: no master key configured
            InputError: plaintext is empty
        """
        master_key = self._require_master_key()
        if not plaintext:
            raise InputError("Cannot encrypt empty data")

        data_key = secrets.token_bytes(KEY_LENGTH)
        ciphertext, iv, value_tag = _seal(data_key, plaintext.encode("utf-8"))
        wrapped_key, data_key_iv, wrap_tag = _seal(master_key, data_key)

        return EncryptedValue(
            ciphertext=_b64(ciphertext),
            iv=_b64(iv),
            auth_tag=_b64(value_tag + wrap_tag),
            wrapped_data_key=_b64(wrapped_key),
            data_key_iv=_b64(data_key_iv),
            format_version=FORMAT_VERSION,
        )

    def _unwrap(self, value: Any) -> tuple[EncryptedValue, bytes, bytes]:
        """Parse a stored value and recover (value, data_key, value_tag)."""
        master_key = self._require_master_key()
        try:
            if not isinstance(value, EncryptedValue):
                value = EncryptedValue.model_validate(value)
            combined_tag = _unb64(value.auth_tag)
            iv = _unb64(value.iv)
            data_key_iv = _unb64(value.data_key_iv)
            if (
                len(combined_tag) != 2 * AUTH_TAG_LENGTH
                or len(iv) != IV_LENGTH
                or len(data_key_iv) != IV_LENGTH
            ):
                raise ValueError("invalid component length")
            value_tag = combined_tag[:AUTH_TAG_LENGTH]
            wrap_tag = combined_tag[AUTH_TAG_LENGTH:]
            data_key = _open(master_key, _unb64(value.wrapped_data_key), data_key_iv, wrap_tag)
            if len(data_key) != KEY_LENGTH:
                raise ValueError("invalid data key length")
        except (InvalidTag, ValueError, TypeError, binascii.Error) as e:
            logger.warning("envelope_unwrap_failed", error_type=type(e).__name__)
            raise DecryptionError(_DECRYPTION_FAILED) from None
        return value, data_key, value_tag

    def decrypt_value(self, value: Any) -> str:
        """
        Decrypt an EncryptedValue (or a mapping with the same fields).

        Raises:
            ConfigurationError: no master key configured
            DecryptionError: malformed structure, wrong key or tampering
        """
        value, data_key, value_tag = self._unwrap(value)
        try:
            plaintext = _open(data_key, _unb64(value.ciphertext), _unb64(value.iv), value_tag)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, binascii.Error) as e:
            logger.warning("envelope_decrypt_failed", error_type=type(e).__name__)
            raise DecryptionError(_DECRYPTION_FAILED) from None

    def rewrap_value(self, value: Any, new_master_key_hex: str) -> EncryptedValue:
        """
        Re-wrap a value's data key under a new master key.

        The ciphertext, its IV and its tag are preserved; only the wrapped
        key, its IV and the wrap half of the combined tag change.
        """
        new_master_key = _parse_master_key(new_master_key_hex)
        if new_master_key is None:
            raise ConfigurationError("New master key must be 64 hex characters (256-bit key).")

        value, data_key, value_tag = self._unwrap(value)
        wrapped_key, data_key_iv, wrap_tag = _seal(new_master_key, data_key)

        return EncryptedValue(
            ciphertext=value.ciphertext,
            iv=value.iv,
            auth_tag=_b64(value_tag + wrap_tag),
            wrapped_data_key=_b64(wrapped_key),
            data_key_iv=_b64(data_key_iv),
            format_version=value.format_version,
        )

    def encrypt_fields(self, doc: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Strictly encrypt the non-empty string fields of a document."""
        result = dict(doc)
        for field in fields:
            if isinstance(doc.get(field), str) and doc[field]:
                result[field] = self.encrypt_value(doc[field]).model_dump()
        return result

    def decrypt_fields(self, doc: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Strictly decrypt the encrypted fields of a document."""
        result = dict(doc)
        for field in fields:
            if isinstance(doc.get(field), (Mapping, EncryptedValue)):
                result[field] = self.decrypt_value(doc[field])
        return result


@lru_cache()
def get_envelope_cipher() -> EnvelopeCipher:
    """Get the process-wide EnvelopeCipher built from settings."""
    return EnvelopeCipher(settings.ENCRYPTION_MASTER_KEY)


def generate_master_key() -> str:
    """
    Generate a new 256-bit master key as 64 hex characters.

    Use this to generate a new key for ENCRYPTION_MASTER_KEY.
    """
    return secrets.token_hex(KEY_LENGTH)


def is_encryption_configured() -> bool:
    """Check whether the settings-backed cipher has a valid master key."""
    return get_envelope_cipher().is_configured()
