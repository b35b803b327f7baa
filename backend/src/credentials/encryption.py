"""
Process-wide credential encryption.

Holds the single CipherCodec built from CREDENTIAL_ENCRYPTION_KEY and wraps
it for credential objects.

SECURITY REQUIREMENTS:
- Key is read once; absence is a fatal configuration error at startup
- No plaintext credentials outside process memory
- Clear error messages without exposing sensitive data

Usage:
    from src.credentials.encryption import encrypt_credentials, decrypt_credentials

    cipher_text = encrypt_credentials({"access_token": "..."})
    credentials = decrypt_credentials(cipher_text)
"""

import logging
import threading
from typing import Any, Dict, Optional

from src.platform.errors import ConfigurationError, DecryptionError
from src.utils.encryption import CipherCodec, get_encryption_key_from_env

logger = logging.getLogger(__name__)

_codec: Optional[CipherCodec] = None
_codec_lock = threading.Lock()


def configure_cipher_codec(key_string: str) -> CipherCodec:
    """
    Install the process-wide codec from an explicit key.

    Raises:
        ConfigurationError: If the key is missing or malformed
    """
    global _codec
    codec = CipherCodec(key_string=key_string)
    with _codec_lock:
        _codec = codec
    return codec


def get_cipher_codec() -> CipherCodec:
    """
    Get the process-wide codec, creating it from the environment on first use.

    Raises:
        ConfigurationError: If CREDENTIAL_ENCRYPTION_KEY is not set or invalid
    """
    global _codec
    if _codec is None:
        with _codec_lock:
            if _codec is None:
                key_string = get_encryption_key_from_env()
                if not key_string:
                    logger.error(
                        "Encryption not configured",
                        extra={"operation": "get_cipher_codec"}
                    )
                    raise ConfigurationError(
                        "Encryption key not configured. Set CREDENTIAL_ENCRYPTION_KEY environment variable."
                    )
                _codec = CipherCodec(key_string=key_string)
    return _codec


def reset_cipher_codec() -> None:
    """Drop the cached codec (key rotation, tests)."""
    global _codec
    with _codec_lock:
        _codec = None


def validate_encryption_ready() -> None:
    """
    Fail fast at startup if credentials cannot be encrypted.

    Performs a round trip so a malformed key surfaces before any request.
    """
    codec = get_cipher_codec()
    sample = {"self_test": "ok"}
    if codec.decrypt_json(codec.encrypt_json(sample)) != sample:
        raise ConfigurationError("Encryption self-test failed")
    logger.info("Credential encryption ready")


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    """
    Encrypt a credential object for storage.

    SECURITY: input is never logged.
    """
    return get_cipher_codec().encrypt_json(credentials)


def decrypt_credentials(cipher_text: str) -> Dict[str, Any]:
    """
    Decrypt a stored credential object.

    Raises:
        DecryptionError: If the cipher text is malformed or fails authentication
    """
    try:
        return get_cipher_codec().decrypt_json(cipher_text)
    except DecryptionError as e:
        logger.error(
            "Credential decryption failed",
            extra={"operation": "decrypt_credentials", "error_type": type(e).__name__}
        )
        raise
