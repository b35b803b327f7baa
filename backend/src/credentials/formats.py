"""
Stored credential format classification.

A stored credential value is in exactly one of three formats while the
encryption migration is in flight:

- PLAIN: a JSON object (or its serialized string) written before encryption
- LEGACY_CIPHER: a pgcrypto blob decrypted by the database function
  decrypt_credentials()
- NEW_CIPHER: "<base64 nonce>:<base64 ciphertext>" from CipherCodec

classify() picks the format and FormatClassifier.decode() holds the one
decode branch per format, so retiring a format is a change in one place.

Usage:
    from src.credentials.formats import FormatClassifier

    classifier = FormatClassifier(legacy_decryptor)
    resolved = await classifier.resolve(row.credentials, row.credentials_encrypted)
    resolved.credentials  # plaintext dict
    resolved.path         # "new_cipher" | "legacy_cipher" | "plain" | "empty"
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.credentials.encryption import decrypt_credentials

logger = logging.getLogger(__name__)

SEPARATOR = ":"
# A 12-byte nonce plus the smallest ciphertext+tag encode to well over 50 chars
MIN_NEW_CIPHER_LENGTH = 50


class CredentialFormat(str, Enum):
    """Storage format of a credential value."""
    PLAIN = "plain"
    LEGACY_CIPHER = "legacy_cipher"
    NEW_CIPHER = "new_cipher"


class LegacyDecryptionError(Exception):
    """Raised when the legacy database-side decryption fails."""
    pass


@dataclass
class ResolvedCredentials:
    """Plaintext credentials and the path that produced them."""
    credentials: Dict[str, Any]
    format: Optional[CredentialFormat]

    @property
    def path(self) -> str:
        return self.format.value if self.format else "empty"

    @property
    def is_empty(self) -> bool:
        return not self.credentials


# =============================================================================
# Legacy decryption collaborator
# =============================================================================

class LegacyDecryptor(ABC):
    """Decrypts values written by the deprecated database-side scheme."""

    @abstractmethod
    async def decrypt(self, cipher_text: str) -> Dict[str, Any]:
        """
        Decrypt a legacy blob.

        Raises:
            LegacyDecryptionError: If the database cannot decrypt the value
        """
        pass


class PgcryptoLegacyDecryptor(LegacyDecryptor):
    """
    Calls the decrypt_credentials(encrypted_creds text) SQL function.

    The function wraps pgp_sym_decrypt and returns '{}' when the blob
    cannot be decrypted.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    async def decrypt(self, cipher_text: str) -> Dict[str, Any]:
        try:
            result = self.db.execute(
                text("SELECT decrypt_credentials(:encrypted_creds)"),
                {"encrypted_creds": cipher_text},
            ).scalar()
        except SQLAlchemyError as e:
            # A failed statement aborts the surrounding transaction
            self.db.rollback()
            logger.error(
                "Legacy credential decryption failed",
                extra={"error_type": type(e).__name__}
            )
            raise LegacyDecryptionError("Legacy decryption failed") from e

        if result is None:
            raise LegacyDecryptionError("Legacy decryption returned no data")
        if isinstance(result, str):
            try:
                result = json.loads(result)
            except json.JSONDecodeError:
                raise LegacyDecryptionError("Legacy decryption returned invalid JSON") from None
        if not isinstance(result, dict):
            raise LegacyDecryptionError("Legacy decryption returned a non-object value")
        return result


# =============================================================================
# Classification
# =============================================================================

def unwrap_stored_value(value: Any) -> Any:
    """Strip the quotes left on strings that were JSON-encoded twice."""
    if isinstance(value, str) and len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def looks_like_new_cipher(value: Any) -> bool:
    """
    Shape check for "<nonce>:<ciphertext>" text.

    A heuristic only; a value that passes is still authenticated on decrypt.
    """
    return (
        isinstance(value, str)
        and value.count(SEPARATOR) == 1
        and not value.lstrip().startswith(("{", "["))
        and len(value) > MIN_NEW_CIPHER_LENGTH
    )


def classify(value: Any, encrypted_flag: bool) -> Optional[CredentialFormat]:
    """
    Classify a stored credential value.

    The encrypted flag is a hint only; the value's shape wins.

    Returns:
        The format, or None when the value carries no credentials at all
    """
    value = unwrap_stored_value(value)
    if looks_like_new_cipher(value):
        return CredentialFormat.NEW_CIPHER
    if encrypted_flag and isinstance(value, str) and value:
        return CredentialFormat.LEGACY_CIPHER
    if isinstance(value, dict):
        return CredentialFormat.PLAIN
    if isinstance(value, str) and value:
        return CredentialFormat.PLAIN
    return None


def parse_plain(value: Any) -> Dict[str, Any]:
    """
    Decode a PLAIN value.

    Raises:
        ValueError: If a string value is not a serialized JSON object
    """
    if isinstance(value, dict):
        return value
    data = json.loads(value)
    if not isinstance(data, dict):
        raise ValueError("Credentials are not a JSON object")
    return data


class FormatClassifier:
    """
    Resolves stored credential values to plaintext objects.

    Recovery order for non-cipher values: legacy decryption, then
    direct parse, then an empty object so display paths never fail.
    Cipher text that does not decrypt under the current key is always
    a hard DecryptionError.
    """

    def __init__(self, legacy_decryptor: Optional[LegacyDecryptor] = None):
        self.legacy_decryptor = legacy_decryptor

    async def decode(self, value: Any, fmt: CredentialFormat) -> Dict[str, Any]:
        """
        Decode a value known to be in the given format.

        Raises:
            DecryptionError: NEW_CIPHER value fails to decrypt
            LegacyDecryptionError: LEGACY_CIPHER value cannot be decrypted
            ValueError: PLAIN value is not a JSON object
        """
        value = unwrap_stored_value(value)
        if fmt == CredentialFormat.NEW_CIPHER:
            return decrypt_credentials(value)
        if fmt == CredentialFormat.LEGACY_CIPHER:
            if self.legacy_decryptor is None:
                raise LegacyDecryptionError("No legacy decryptor configured")
            return await self.legacy_decryptor.decrypt(value)
        return parse_plain(value)

    async def resolve(self, value: Any, encrypted_flag: bool) -> ResolvedCredentials:
        """
        Resolve a stored value to plaintext.

        Raises:
            DecryptionError: If a new-cipher value fails to decrypt
        """
        fmt = classify(value, encrypted_flag)
        if fmt is None:
            return ResolvedCredentials(credentials={}, format=None)

        if fmt == CredentialFormat.NEW_CIPHER:
            return ResolvedCredentials(
                credentials=await self.decode(value, fmt),
                format=fmt,
            )

        if fmt == CredentialFormat.LEGACY_CIPHER:
            try:
                return ResolvedCredentials(
                    credentials=await self.decode(value, fmt),
                    format=fmt,
                )
            except LegacyDecryptionError as e:
                logger.warning(
                    "Legacy decryption failed, trying plain parse",
                    extra={"error": str(e)}
                )

        try:
            return ResolvedCredentials(
                credentials=parse_plain(unwrap_stored_value(value)),
                format=CredentialFormat.PLAIN,
            )
        except ValueError:
            # json.JSONDecodeError is a ValueError
            logger.warning("Stored credentials could not be parsed")
            return ResolvedCredentials(credentials={}, format=None)
