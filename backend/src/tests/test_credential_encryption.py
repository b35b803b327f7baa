"""
Credential encryption tests.

CRITICAL: These tests verify:
1. Credentials are encrypted at rest in the nonce:ciphertext format
2. Tampered or foreign cipher text never decrypts
3. Tokens NEVER appear in logs
4. Error handling for misconfigured encryption
"""

import base64
import logging
from io import StringIO

import pytest

from src.credentials.encryption import (
    configure_cipher_codec,
    decrypt_credentials,
    encrypt_credentials,
    get_cipher_codec,
    reset_cipher_codec,
    validate_encryption_ready,
)
from src.credentials.redaction import (
    REDACTED_VALUE,
    AuditEventType,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    find_secret_keys,
    is_credential_secret_key,
    redact_credential_data,
    redact_credential_value,
)
from src.platform.errors import ConfigurationError, DecryptionError
from src.utils.encryption import NONCE_SIZE, TAG_SIZE, CipherCodec, decode_key_string


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def codec():
    return CipherCodec(key_string=CipherCodec.generate_key_string())


@pytest.fixture
def log_capture():
    """Text written by the test and audit loggers through a redacting handler."""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("%(name)s %(message)s"))
    handler.addFilter(CredentialLoggingFilter())

    watched = [logging.getLogger(name) for name in ("test_credentials", "credentials.audit")]
    for watched_logger in watched:
        watched_logger.addHandler(handler)
        watched_logger.setLevel(logging.DEBUG)

    yield stream

    for watched_logger in watched:
        watched_logger.removeHandler(handler)


@pytest.fixture
def sample_tokens():
    # Deliberately fake; must not match real provider token formats
    return {
        name: f"fake_{name}_value_0000"
        for name in ("linkedin_token", "google_token", "facebook_token", "refresh_token")
    }


# ============================================================================
# TEST SUITE: CIPHER CODEC
# ============================================================================

class TestCipherCodec:

    def test_encrypt_decrypt_roundtrip(self, codec):
        """CRITICAL: Encrypted credentials decrypt back to the original object."""
        credentials = {"access_token": "abc", "refresh_token": "def"}

        cipher_text = codec.encrypt_json(credentials)

        assert codec.decrypt_json(cipher_text) == credentials
        assert "abc" not in cipher_text

    def test_cipher_text_shape(self, codec):
        """Stored value is base64(nonce):base64(ciphertext+tag)."""
        cipher_text = codec.encrypt("x")

        nonce_b64, body_b64 = cipher_text.split(":")
        assert len(base64.b64decode(nonce_b64)) == NONCE_SIZE
        assert len(base64.b64decode(body_b64)) == len("x") + TAG_SIZE

    def test_same_plaintext_different_ciphertext(self, codec):
        """Every encryption uses a fresh nonce."""
        first = codec.encrypt("same-token-value")
        second = codec.encrypt("same-token-value")

        assert first != second
        assert first.split(":")[0] != second.split(":")[0]
        assert codec.decrypt(first) == codec.decrypt(second) == "same-token-value"

    def test_tampered_ciphertext_rejected(self, codec):
        """CRITICAL: A flipped ciphertext byte fails authentication."""
        nonce_b64, body_b64 = codec.encrypt("secret-value").split(":")
        body = bytearray(base64.b64decode(body_b64))
        body[0] ^= 0x01
        tampered = f"{nonce_b64}:{base64.b64encode(bytes(body)).decode()}"

        with pytest.raises(DecryptionError, match="tampered"):
            codec.decrypt(tampered)

    @pytest.mark.parametrize("plaintext", ["x", "xy", "xyz", "secret-value"])
    def test_every_flipped_character_rejected(self, codec, plaintext):
        """CRITICAL: No single-character edit of the stored text decrypts, padded tail included."""
        cipher_text = codec.encrypt(plaintext)

        accepted = []
        for index, char in enumerate(cipher_text):
            flipped = cipher_text[:index] + chr(ord(char) ^ 0x01) + cipher_text[index + 1:]
            try:
                codec.decrypt(flipped)
            except DecryptionError:
                continue
            accepted.append(flipped)

        assert accepted == []

    def test_non_canonical_padding_rejected(self, codec):
        nonce_b64, body_b64 = codec.encrypt("x").split(":")
        assert body_b64.endswith("=")
        # Spare low bits of the last data character are ignored by the decoder
        last = body_b64.rstrip("=")[-1]
        alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
        sibling = alphabet[alphabet.index(last) ^ 0x01]
        stripped = body_b64.rstrip("=")
        edited = stripped[:-1] + sibling + body_b64[len(stripped):]
        assert base64.b64decode(edited) == base64.b64decode(body_b64)

        with pytest.raises(DecryptionError, match="Invalid encrypted data format"):
            codec.decrypt(f"{nonce_b64}:{edited}")

    def test_wrong_key_rejected(self, codec):
        """Cipher text from another key never decrypts."""
        other = CipherCodec(key_string=CipherCodec.generate_key_string())

        with pytest.raises(DecryptionError):
            other.decrypt(codec.encrypt("secret-value"))

    @pytest.mark.parametrize("value", [
        "no-separator-here",
        "a:b:c",
        ":missingnonce",
        "!!!:@@@",
        base64.b64encode(b"short").decode() + ":" + base64.b64encode(b"x" * 32).decode(),
    ])
    def test_malformed_cipher_text_rejected(self, codec, value):
        with pytest.raises(DecryptionError):
            codec.decrypt(value)

    def test_decrypt_json_requires_object(self, codec):
        with pytest.raises(DecryptionError, match="not a credential object"):
            codec.decrypt_json(codec.encrypt("[1, 2, 3]"))

        with pytest.raises(DecryptionError, match="not valid JSON"):
            codec.decrypt_json(codec.encrypt("not json"))

    def test_unicode_and_long_values(self, codec):
        credentials = {"access_token": "x" * 10000, "name": "页面 🔐"}

        assert codec.decrypt_json(codec.encrypt_json(credentials)) == credentials


class TestKeyDecoding:

    def test_base64_key(self):
        key = bytes(range(32))
        assert decode_key_string(base64.b64encode(key).decode()) == key

    def test_hex_key(self):
        key = bytes(range(32))
        assert decode_key_string(key.hex()) == key

    def test_raw_32_byte_key(self):
        assert decode_key_string("k" * 32) == b"k" * 32

    def test_wrong_length_key_raises(self):
        with pytest.raises(ConfigurationError, match="32 bytes"):
            decode_key_string("too-short")

    def test_codec_requires_key(self):
        with pytest.raises(ConfigurationError):
            CipherCodec()


# ============================================================================
# TEST SUITE: ENCRYPTION CONFIGURATION
# ============================================================================

class TestEncryptionConfiguration:

    def test_encryption_without_key_raises_error(self, monkeypatch):
        """CRITICAL: Encryption fails when CREDENTIAL_ENCRYPTION_KEY not set."""
        reset_cipher_codec()
        monkeypatch.delenv("CREDENTIAL_ENCRYPTION_KEY", raising=False)

        with pytest.raises(ConfigurationError, match="not configured"):
            encrypt_credentials({"access_token": "x"})

    def test_codec_loaded_from_environment(self, monkeypatch):
        reset_cipher_codec()
        monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", CipherCodec.generate_key_string())
        try:
            cipher_text = encrypt_credentials({"access_token": "abc"})
            assert decrypt_credentials(cipher_text) == {"access_token": "abc"}
        finally:
            reset_cipher_codec()

    def test_validate_encryption_ready(self, encryption_key_string):
        validate_encryption_ready()

    def test_validate_encryption_ready_raises_when_not_configured(self, monkeypatch):
        reset_cipher_codec()
        monkeypatch.delenv("CREDENTIAL_ENCRYPTION_KEY", raising=False)

        with pytest.raises(ConfigurationError, match="CREDENTIAL_ENCRYPTION_KEY"):
            validate_encryption_ready()

    def test_configure_replaces_codec(self, encryption_key_string):
        cipher_text = encrypt_credentials({"access_token": "abc"})

        configure_cipher_codec(CipherCodec.generate_key_string())

        assert get_cipher_codec() is not None
        with pytest.raises(DecryptionError):
            decrypt_credentials(cipher_text)


# ============================================================================
# TEST SUITE: TOKENS NEVER IN LOGS
# ============================================================================

class TestTokensNeverInLogs:
    """CRITICAL: Verify tokens never appear in any log output."""

    def test_tokens_redacted_from_dict(self, sample_tokens):
        data = {
            "access_token": sample_tokens["linkedin_token"],
            "refresh_token": sample_tokens["refresh_token"],
            "user_name": "John",
        }

        result = redact_credential_data(data)

        assert result["access_token"] == REDACTED_VALUE
        assert result["refresh_token"] == REDACTED_VALUE
        assert result["user_name"] == "John"
        assert sample_tokens["linkedin_token"] not in str(result)

    def test_page_tokens_redacted(self):
        """Facebook page token maps are redacted as a whole."""
        data = {"page_tokens": {"123": "page-secret"}, "pages": [{"page_id": "123"}]}

        result = redact_credential_data(data)

        assert result["page_tokens"] == REDACTED_VALUE
        assert result["pages"] == [{"page_id": "123"}]

    def test_expiry_fields_not_redacted(self):
        """Expiry timestamps are allowed in logs."""
        data = {
            "access_token_expires_at": "2030-01-01T00:00:00+00:00",
            "refresh_token_expires_at": "2030-06-01T00:00:00+00:00",
        }

        assert redact_credential_data(data) == data

    @pytest.mark.parametrize("value,leaked", [
        ("Authorization: Bearer abc.def.ghi", "abc.def.ghi"),
        ("token ya29.a0AfH6SMBx_FAKE_VALUE", "ya29."),
        ("key sk-FAKEFAKEFAKEFAKEFAKE", "sk-FAKE"),
        ("https://graph.facebook.com/me?access_token=EAAfake&x=1", "EAAfake"),
    ])
    def test_token_patterns_in_strings_redacted(self, value, leaked):
        result = redact_credential_value(value)

        assert leaked not in result
        assert REDACTED_VALUE in result

    def test_logging_filter_redacts_tokens(self, log_capture):
        """CRITICAL: a bearer token in a message never reaches the handler output."""
        logger = logging.getLogger("test_credentials")

        logger.info("Calling with Bearer test_bearer_value_xxxxx")

        assert "test_bearer_value_xxxxx" not in log_capture.getvalue()

    def test_logging_filter_redacts_extra_fields(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        record.access_token = "secret-value"
        record.platform = "linkedin"

        CredentialLoggingFilter().filter(record)

        assert record.access_token == REDACTED_VALUE
        assert record.platform == "linkedin"

    def test_logging_filter_preserves_safe_data(self, log_capture):
        logger = logging.getLogger("test_credentials")

        logger.info("Processing integration for platform: linkedin")

        assert "linkedin" in log_capture.getvalue()


# ============================================================================
# TEST SUITE: SECRET KEY DETECTION
# ============================================================================

class TestSecretKeyDetection:

    @pytest.mark.parametrize("key", [
        "access_token",
        "refresh_token",
        "accessToken",
        "page_tokens",
        "bearer_token",
        "api_key",
        "apiKey",
        "consumer_secret",
        "access_token_secret",
        "password",
        "credentials",
        "client_secret",
    ])
    def test_secret_keys_detected(self, key):
        assert is_credential_secret_key(key)

    @pytest.mark.parametrize("key", [
        "page_name",
        "ig_business_id",
        "client_id",
        "expires_at",
        "access_token_expires_at",
        "refresh_token_expires_in",
        "credentials_format",
        "refresh_token_rotated",
        "status",
        "platform",
    ])
    def test_non_secret_keys_not_detected(self, key):
        assert not is_credential_secret_key(key)

    def test_find_secret_keys_reports_paths(self):
        data = {
            "pages": [{"page_id": "1", "access_token": "x"}],
            "profile": {"name": "n"},
            "refresh_token": "y",
        }

        assert sorted(find_secret_keys(data)) == ["pages.access_token", "refresh_token"]


# ============================================================================
# TEST SUITE: AUDIT LOGGING
# ============================================================================

class TestAuditLogging:

    def test_audit_logger_logs_events(self, log_capture):
        audit = CredentialAuditLogger(user_id="test-user")

        audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            integration_id="int-123",
            platform="linkedin",
        )

        assert "credential.stored" in log_capture.getvalue()

    def test_audit_logger_redacts_tokens_in_metadata(self, caplog):
        audit = CredentialAuditLogger(user_id="test-user")

        with caplog.at_level(logging.INFO, logger="credentials.audit"):
            audit.log(
                event_type=AuditEventType.CREDENTIAL_STORED,
                integration_id="int-123",
                platform="linkedin",
                metadata={"access_token": "secret_test_value_for_audit"},
            )

        record = caplog.records[-1]
        assert record.access_token == REDACTED_VALUE
        assert record.integration_id == "int-123"

    def test_audit_error_message_redacted(self, caplog):
        audit = CredentialAuditLogger(user_id=None)

        with caplog.at_level(logging.INFO, logger="credentials.audit"):
            audit.log_error("int-1", "facebook", "failed with access_token=EAAsecretvalue")

        record = caplog.records[-1]
        assert record.event_type == AuditEventType.CREDENTIAL_ERROR.value
        assert "EAAsecretvalue" not in record.error

