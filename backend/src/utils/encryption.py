"""
AES-256-GCM codec for platform credentials.

A credential object is JSON-serialized, encrypted under a fresh 12-byte
nonce, and stored as one text value:

    "<base64 nonce>:<base64 ciphertext||tag>"

The 32-byte key comes from CREDENTIAL_ENCRYPTION_KEY and is never logged.

    codec = CipherCodec(key_string=os.environ["CREDENTIAL_ENCRYPTION_KEY"])
    stored = codec.encrypt_json({"access_token": "..."})
    codec.decrypt_json(stored)
"""

import base64
import binascii
import json
import logging
import os
import secrets
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.platform.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

SEPARATOR = ":"

ENCRYPTION_KEY_ENV = "CREDENTIAL_ENCRYPTION_KEY"

MALFORMED_MESSAGE = "Invalid encrypted data format"


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


# Tried in order; the first that yields exactly KEY_SIZE bytes wins
_KEY_DECODERS = (
    ("base64", _b64decode),
    ("hex", bytes.fromhex),
    ("utf-8", lambda s: s.encode("utf-8")),
)


def decode_key_string(key_string: str) -> bytes:
    """Accept a 32-byte key given as base64, hex, or raw text."""
    for _name, decoder in _KEY_DECODERS:
        try:
            key = decoder(key_string)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            continue
        if len(key) == KEY_SIZE:
            return key
    raise ConfigurationError(f"Encryption key must decode to {KEY_SIZE} bytes")


def split_cipher_text(cipher_text: Any) -> Tuple[bytes, bytes]:
    """Parse "<nonce>:<body>" into raw bytes, checking sizes but not authenticity."""
    if not isinstance(cipher_text, str):
        raise DecryptionError("Cipher text must be a string")

    nonce_b64, sep, body_b64 = cipher_text.partition(SEPARATOR)
    if not sep or not nonce_b64 or not body_b64 or SEPARATOR in body_b64:
        raise DecryptionError(MALFORMED_MESSAGE)

    try:
        nonce, body = _b64decode(nonce_b64), _b64decode(body_b64)
    except (binascii.Error, ValueError):
        raise DecryptionError(MALFORMED_MESSAGE) from None

    # Padding bits are ignored by the decoder; only the canonical spelling is accepted
    if _b64encode(nonce) != nonce_b64 or _b64encode(body) != body_b64:
        raise DecryptionError(MALFORMED_MESSAGE)

    if len(nonce) != NONCE_SIZE or len(body) < TAG_SIZE:
        raise DecryptionError(MALFORMED_MESSAGE)
    return nonce, body


class CipherCodec:
    """Encrypts and decrypts credential text under one key. Safe to share between threads."""

    def __init__(self, key: Optional[bytes] = None, key_string: Optional[str] = None):
        if key is None:
            if not key_string:
                raise ConfigurationError("Encryption key is required")
            key = decode_key_string(key_string)
        if len(key) != KEY_SIZE:
            raise ConfigurationError(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @staticmethod
    def generate_key_string() -> str:
        """New random key, base64 encoded, suitable for CREDENTIAL_ENCRYPTION_KEY."""
        return _b64encode(secrets.token_bytes(KEY_SIZE))

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        body = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{_b64encode(nonce)}{SEPARATOR}{_b64encode(body)}"

    def decrypt(self, cipher_text: str) -> str:
        """
        Reverse encrypt().

        Raises:
            DecryptionError: malformed text, wrong key, or tampered data
        """
        nonce, body = split_cipher_text(cipher_text)
        try:
            plaintext = self._aesgcm.decrypt(nonce, body, None)
        except InvalidTag:
            logger.error("Credential decryption failed: authentication tag mismatch")
            raise DecryptionError("Decryption failed: data may have been tampered with") from None

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted data is not valid UTF-8") from None

    def encrypt_json(self, data: Dict[str, Any]) -> str:
        return self.encrypt(json.dumps(data))

    def decrypt_json(self, cipher_text: str) -> Dict[str, Any]:
        """Decrypt to a credential dict; anything but a JSON object is a DecryptionError."""
        try:
            data = json.loads(self.decrypt(cipher_text))
        except json.JSONDecodeError:
            logger.error("Credential decryption failed: payload is not valid JSON")
            raise DecryptionError("Decrypted data is not valid JSON") from None
        if not isinstance(data, dict):
            raise DecryptionError("Decrypted data is not a credential object")
        return data


def get_encryption_key_from_env(env_var: str = ENCRYPTION_KEY_ENV) -> Optional[str]:
    value = (os.environ.get(env_var) or "").strip()
    return value or None
