"""
Encrypted-field helpers for display and lookup paths.

These helpers degrade instead of raising: a value that cannot be decrypted
is shown as DECRYPTION_ERROR_SENTINEL, and safe_encrypt falls back to the
plaintext when no master key is configured. Paths that must never store
plaintext (evaluation comments) call EnvelopeCipher.encrypt_value directly.
"""

from collections.abc import Iterable, Mapping
from typing import Any, Optional

import structlog

from core.encryption import EnvelopeCipher, get_envelope_cipher
from core.exceptions import ConfigurationError, DecryptionError, InputError
from db.document_store import EVALUATIONS_CONTAINER, DocumentStore
from models.documents import EncryptedValue

logger = structlog.get_logger(__name__)

DECRYPTION_ERROR_SENTINEL = "[Decryption Error]"

_ENCRYPTED_KEYS = frozenset(EncryptedValue.model_fields)

# Containers whose records must never be searched by plaintext content
_UNSEARCHABLE_CONTAINERS = frozenset({EVALUATIONS_CONTAINER})


def is_encrypted(value: Any) -> bool:
    """Structural check: does the value look like an EncryptedValue?"""
    if isinstance(value, EncryptedValue):
        return True
    if not isinstance(value, Mapping):
        return False
    return _ENCRYPTED_KEYS.issubset(value.keys()) and all(
        isinstance(value[key], str) for key in _ENCRYPTED_KEYS
    )


def safe_decrypt(value: Any, cipher: Optional[EnvelopeCipher] = None) -> str:
    """
    Decrypt a value for display, never raising.

    Plain strings are returned unchanged (legacy or unencrypted data).
    """
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if not is_encrypted(value):
        return str(value)

    cipher = cipher or get_envelope_cipher()
    try:
        return cipher.decrypt_value(value)
    except (DecryptionError, ConfigurationError) as e:
        logger.error("safe_decrypt_failed", error_code=e.code)
        return DECRYPTION_ERROR_SENTINEL


def safe_encrypt(value: Any, cipher: Optional[EnvelopeCipher] = None) -> Any:
    """
    Encrypt a value if possible.

    Already-encrypted values pass through. Without a master key the
    plaintext is returned and the failure is logged (fail-open).
    """
    if is_encrypted(value) or not isinstance(value, str) or not value:
        return value

    cipher = cipher or get_envelope_cipher()
    try:
        return cipher.encrypt_value(value)
    except (ConfigurationError, InputError) as e:
        logger.error("safe_encrypt_failed", error_code=e.code)
        return value


def encrypt_document(
    doc: Mapping[str, Any],
    fields: Iterable[str],
    cipher: Optional[EnvelopeCipher] = None,
) -> dict[str, Any]:
    """Encrypt the given fields of a document before storage."""
    result = dict(doc)
    for field in fields:
        if field in result:
            encrypted = safe_encrypt(result[field], cipher)
            result[field] = encrypted.model_dump() if isinstance(encrypted, EncryptedValue) else encrypted
    return result


def decrypt_document(
    doc: Mapping[str, Any],
    fields: Iterable[str],
    cipher: Optional[EnvelopeCipher] = None,
) -> dict[str, Any]:
    """Decrypt the given fields of a document for display."""
    result = dict(doc)
    for field in fields:
        if field in result:
            result[field] = safe_decrypt(result[field], cipher)
    return result


def decrypt_documents(
    docs: Iterable[Mapping[str, Any]],
    fields: Iterable[str],
    cipher: Optional[EnvelopeCipher] = None,
) -> list[dict[str, Any]]:
    """Decrypt the given fields on every document."""
    fields = tuple(fields)
    return [decrypt_document(doc, fields, cipher) for doc in docs]


def _normalize(text: str) -> str:
    return text.strip().lower()


async def _scan_encrypted_field(
    store: DocumentStore,
    container: str,
    field_name: str,
    plaintext_query: str,
    extra_filter: Optional[dict[str, Any]],
    cipher: Optional[EnvelopeCipher],
    first_only: bool,
) -> list[dict[str, Any]]:
    if container in _UNSEARCHABLE_CONTAINERS:
        raise InputError(f"Searching {container} by encrypted content is not permitted")

    target = _normalize(plaintext_query)
    matches: list[dict[str, Any]] = []
    for doc in await store.find(container, extra_filter):
        if field_name not in doc:
            continue
        if _normalize(safe_decrypt(doc[field_name], cipher)) == target:
            matches.append(doc)
            if first_only:
                break
    return matches


async def find_by_encrypted_field(
    store: DocumentStore,
    container: str,
    field_name: str,
    plaintext_query: str,
    extra_filter: Optional[dict[str, Any]] = None,
    cipher: Optional[EnvelopeCipher] = None,
) -> Optional[dict[str, Any]]:
    """
    Find the first document whose encrypted field equals a plaintext value.

    Encrypted values cannot be queried in the store, so candidates matching
    extra_filter are fetched and decrypted one by one. The comparison is
    case-insensitive and ignores surrounding whitespace.
    """
    matches = await _scan_encrypted_field(
        store, container, field_name, plaintext_query, extra_filter, cipher, first_only=True
    )
    return matches[0] if matches else None


async def find_all_by_encrypted_field(
    store: DocumentStore,
    container: str,
    field_name: str,
    plaintext_query: str,
    extra_filter: Optional[dict[str, Any]] = None,
    cipher: Optional[EnvelopeCipher] = None,
) -> list[dict[str, Any]]:
    """Find every document whose encrypted field equals a plaintext value."""
    return await _scan_encrypted_field(
        store, container, field_name, plaintext_query, extra_filter, cipher, first_only=False
    )
