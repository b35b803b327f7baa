"""
Platform credential vault.

Covers:
- Encrypted storage for platform tokens (AES-256-GCM)
- Reading of plaintext, legacy-cipher and new-cipher rows
- Token refresh per platform
- Encryption migration of legacy rows
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using CREDENTIAL_ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses

Usage:
    from src.credentials import CredentialStore, TokenRefresher

    store = CredentialStore(db_session, user_id)
    credentials, handle = await store.fetch_decrypted(Platform.LINKEDIN)

    result = await TokenRefresher(store).refresh(Platform.LINKEDIN)
"""

from src.credentials.store import CredentialStore, IntegrationHandle
from src.credentials.encryption import (
    decrypt_credentials,
    encrypt_credentials,
    validate_encryption_ready,
)
from src.credentials.formats import CredentialFormat, FormatClassifier
from src.credentials.migration import MigrationReport, MigrationSweep
from src.credentials.refresh import RefreshResult, TokenRefresher
from src.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    AuditEventType,
)

__all__ = [
    # Store
    "CredentialStore",
    "IntegrationHandle",
    # Encryption
    "encrypt_credentials",
    "decrypt_credentials",
    "validate_encryption_ready",
    # Formats & migration
    "CredentialFormat",
    "FormatClassifier",
    "MigrationReport",
    "MigrationSweep",
    # Refresh
    "TokenRefresher",
    "RefreshResult",
    # Redaction & Audit
    "redact_credential_data",
    "CredentialAuditLogger",
    "AuditEventType",
]
