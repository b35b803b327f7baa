"""Cipher codec shared by the credential store and the migration job."""

from src.utils.encryption import (
    CipherCodec,
    decode_key_string,
    get_encryption_key_from_env,
)

__all__ = [
    "CipherCodec",
    "decode_key_string",
    "get_encryption_key_from_env",
]
