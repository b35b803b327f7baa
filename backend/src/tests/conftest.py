"""
Shared pytest fixtures for vault tests.

Provides a process-wide cipher key, an in-memory SQLite database with the
platform_integrations table, and a fake legacy decryptor standing in for
the database-side decrypt_credentials() function.
"""

import json
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.credentials.encryption import configure_cipher_codec, reset_cipher_codec
from src.credentials.formats import LegacyDecryptionError, LegacyDecryptor
from src.db_base import Base
from src.models.platform_integration import PlatformIntegration  # noqa: F401 - registers table
from src.utils.encryption import CipherCodec


class FakeLegacyDecryptor(LegacyDecryptor):
    """
    Maps legacy cipher strings to plaintext objects.

    Unknown strings behave like pgcrypto failing to decrypt.
    """

    def __init__(self, mapping=None):
        self.mapping = dict(mapping or {})
        self.calls = []

    async def decrypt(self, cipher_text):
        self.calls.append(cipher_text)
        if cipher_text not in self.mapping:
            raise LegacyDecryptionError("legacy decryption failed")
        result = self.mapping[cipher_text]
        return json.loads(result) if isinstance(result, str) else dict(result)


@pytest.fixture
def encryption_key_string():
    """Install a fresh AES-256 key for the test and drop it afterwards."""
    key_string = CipherCodec.generate_key_string()
    configure_cipher_codec(key_string)
    yield key_string
    reset_cipher_codec()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine, tables=[PlatformIntegration.__table__])
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    session = sessionmaker(bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def user_id():
    return str(uuid.uuid4())


@pytest.fixture
def other_user_id():
    return str(uuid.uuid4())


@pytest.fixture
def legacy_decryptor():
    return FakeLegacyDecryptor()
