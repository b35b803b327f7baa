"""
Credential store for platform integrations.

SECURITY REQUIREMENTS:
- Credentials are encrypted with CipherCodec on every write
- No plaintext credentials outside process memory
- User-scoped access only; another user's integration is indistinguishable
  from a missing one
- Credentials and metadata are written by independent operations and
  never merged into one field

Migration:
- Reads accept plaintext, legacy-cipher and new-cipher rows
- Every write re-encrypts in the new cipher format, so rows migrate the
  first time they are written after a read

Usage:
    store = CredentialStore(db_session, user_id)

    credentials, handle = await store.fetch_decrypted(Platform.LINKEDIN)
    credentials["access_token"] = new_token
    await store.write_credentials(
        handle, credentials, metadata={**handle.metadata, "expires_at": "..."}
    )
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.credentials.encryption import encrypt_credentials
from src.credentials.expiration import token_expiration_status
from src.credentials.formats import (
    CredentialFormat,
    FormatClassifier,
    LegacyDecryptor,
    PgcryptoLegacyDecryptor,
    classify,
)
from src.credentials.redaction import (
    AuditEventType,
    CredentialAuditLogger,
    find_secret_keys,
)
from src.models.base import utcnow
from src.models.platform_integration import (
    IntegrationStatus,
    Platform,
    PlatformIntegration,
)
from src.platform.errors import (
    ConflictError,
    DecryptionError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Serialized credential object size limit
MAX_CREDENTIALS_SIZE = 50000

# OAuth app configuration a user may keep in metadata for their own app;
# user tokens are never allowed there
METADATA_CLIENT_KEYS = frozenset({"client_secret", "app_secret"})

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


# =============================================================================
# Credential key normalization
# =============================================================================

def to_snake_case(key: str) -> str:
    """accessToken -> access_token; snake_case keys are returned unchanged."""
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def to_camel_case(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def normalize_credential_keys(credentials: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy with top-level keys in snake_case.

    When both spellings are present the snake_case value wins.
    Nested values (e.g. page id -> token maps) are left untouched.
    """
    normalized: Dict[str, Any] = {}
    for key, value in credentials.items():
        if to_snake_case(key) == key:
            normalized[key] = value
    for key, value in credentials.items():
        snake = to_snake_case(key)
        if snake != key and snake not in normalized:
            normalized[snake] = value
    return normalized


def credential_field(credentials: Dict[str, Any], name: str) -> Any:
    """
    Read a credential field by its snake_case name.

    Rows written before normalization may still carry camelCase keys.
    """
    value = credentials.get(name)
    if value is None:
        value = credentials.get(to_camel_case(name))
    return value


# =============================================================================
# Handle
# =============================================================================

@dataclass
class IntegrationHandle:
    """
    Reference to an integration for later writes.

    SECURITY: carries metadata only, never credentials.
    """
    id: str
    user_id: str
    platform: Platform
    version: int
    metadata: Dict[str, Any] = field(default_factory=dict)
    credentials_format: Optional[CredentialFormat] = None

    @classmethod
    def from_integration(
        cls,
        integration: PlatformIntegration,
        credentials_format: Optional[CredentialFormat] = None,
    ) -> "IntegrationHandle":
        return cls(
            id=integration.id,
            user_id=integration.user_id,
            platform=integration.platform_name,
            version=integration.version,
            metadata=integration.metadata_dict,
            credentials_format=credentials_format,
        )


def validate_credentials_payload(credentials: Any) -> Dict[str, Any]:
    """
    Check a credential object before encryption.

    Raises:
        ValidationError: If not an object or larger than MAX_CREDENTIALS_SIZE
    """
    if not isinstance(credentials, dict):
        raise ValidationError("Credentials must be an object")
    serialized = json.dumps(credentials)
    if len(serialized) > MAX_CREDENTIALS_SIZE:
        raise ValidationError(
            f"Credentials exceed maximum size of {MAX_CREDENTIALS_SIZE} characters"
        )
    return credentials


def validate_metadata_payload(metadata: Any) -> Dict[str, Any]:
    """
    Check that metadata is an object carrying no secrets.

    Raises:
        ValidationError: If a token or secret-looking key is present
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("Metadata must be an object")
    secret_keys = [
        key for key in find_secret_keys(metadata) if key not in METADATA_CLIENT_KEYS
    ]
    if secret_keys:
        raise ValidationError(
            "Metadata must not contain secrets",
            details={"fields": secret_keys},
        )
    return metadata


class CredentialStore:
    """
    User-scoped access to platform integration credentials.

    All queries filter on user_id. Writes are checked against the
    handle's version and raise ConflictError if the integration was
    written since it was read.
    """

    def __init__(
        self,
        db_session: Session,
        user_id: str,
        legacy_decryptor: Optional[LegacyDecryptor] = None,
    ):
        """
        Initialize credential store.

        Args:
            db_session: Database session
            user_id: Owning user, from the identity token or request body
            legacy_decryptor: Decryptor for pre-migration cipher rows

        Raises:
            ValueError: If user_id is not provided
        """
        if not user_id:
            raise ValueError("user_id is required")

        self.db = db_session
        self.user_id = user_id
        self.classifier = FormatClassifier(
            legacy_decryptor or PgcryptoLegacyDecryptor(db_session)
        )
        self.audit = CredentialAuditLogger(user_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def _get_active(self, platform: Platform) -> Optional[PlatformIntegration]:
        stmt = (
            select(PlatformIntegration)
            .where(PlatformIntegration.user_id == self.user_id)
            .where(PlatformIntegration.platform_name == platform)
            .where(PlatformIntegration.status == IntegrationStatus.ACTIVE)
            .order_by(PlatformIntegration.updated_at.desc())
        )
        return self.db.execute(stmt).scalars().first()

    def _get_any(self, platform: Platform) -> Optional[PlatformIntegration]:
        stmt = (
            select(PlatformIntegration)
            .where(PlatformIntegration.user_id == self.user_id)
            .where(PlatformIntegration.platform_name == platform)
        )
        return self.db.execute(stmt).scalars().first()

    def _get_by_id(self, integration_id: str) -> Optional[PlatformIntegration]:
        stmt = (
            select(PlatformIntegration)
            .where(PlatformIntegration.id == integration_id)
            .where(PlatformIntegration.user_id == self.user_id)
        )
        return self.db.execute(stmt).scalars().first()

    def list_active(self) -> List[PlatformIntegration]:
        """List the user's active integrations (credentials stay encrypted)."""
        stmt = (
            select(PlatformIntegration)
            .where(PlatformIntegration.user_id == self.user_id)
            .where(PlatformIntegration.status == IntegrationStatus.ACTIVE)
            .order_by(PlatformIntegration.platform_name)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_integration(self, platform: Platform) -> dict:
        """
        Get a summary of the active integration, safe for API responses.

        SECURITY: never decrypts, never includes the credential blob.

        Raises:
            NotFoundError: If no active integration exists
        """
        integration = self._get_active(platform)
        if not integration:
            raise NotFoundError("Active integration", platform.value)

        fmt = classify(integration.credentials, integration.credentials_encrypted)
        summary = integration.to_safe_dict()
        summary["has_credentials"] = fmt is not None
        summary["credentials_format"] = fmt.value if fmt else None
        summary["token_status"] = token_expiration_status(integration.metadata_dict).to_dict()
        return summary

    # =========================================================================
    # Reads
    # =========================================================================

    async def resolve(
        self,
        integration: PlatformIntegration,
    ) -> Tuple[Dict[str, Any], IntegrationHandle]:
        """
        Decrypt an already-loaded integration owned by this user.

        Raises:
            DecryptionError: If new-cipher credentials fail to decrypt
        """
        if integration.user_id != self.user_id:
            raise NotFoundError("Integration", integration.id)

        platform = integration.platform_name
        try:
            resolved = await self.classifier.resolve(
                integration.credentials,
                integration.credentials_encrypted,
            )
        except DecryptionError:
            logger.error(
                "Credential decryption failed",
                extra={
                    "integration_id": integration.id,
                    "platform": platform.value,
                }
            )
            self.audit.log_error(integration.id, platform.value, "decryption failed")
            raise

        logger.info(
            "Credentials resolved",
            extra={
                "integration_id": integration.id,
                "platform": platform.value,
                "decryption_path": resolved.path,
                "credential_fields": sorted(resolved.credentials.keys()),
            }
        )
        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_ACCESSED,
            integration_id=integration.id,
            platform=platform.value,
            metadata={"decryption_path": resolved.path},
        )
        return resolved.credentials, IntegrationHandle.from_integration(integration, resolved.format)

    async def fetch_decrypted(
        self,
        platform: Platform,
    ) -> Tuple[Dict[str, Any], IntegrationHandle]:
        """
        Load and decrypt the active integration for a platform.

        Reading never writes; a plaintext row stays plaintext until the
        next write_credentials call.

        Returns:
            (plaintext credentials, handle for later writes)

        Raises:
            NotFoundError: If no active integration exists for this user
            DecryptionError: If new-cipher credentials fail to decrypt
        """
        integration = self._get_active(platform)
        if not integration:
            raise NotFoundError("Active integration", platform.value)
        return await self.resolve(integration)

    # =========================================================================
    # Writes
    # =========================================================================

    def _versioned_update(self, handle: IntegrationHandle, values: Dict[str, Any]) -> None:
        """
        Apply an UPDATE guarded by the handle's version, then commit.

        Raises:
            NotFoundError: If the integration no longer exists for this user
            ConflictError: If the integration was written since the handle was read
        """
        new_version = handle.version + 1
        stmt = (
            update(PlatformIntegration)
            .where(PlatformIntegration.id == handle.id)
            .where(PlatformIntegration.user_id == self.user_id)
            .where(PlatformIntegration.version == handle.version)
            .values(version=new_version, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            if self._get_by_id(handle.id) is None:
                raise NotFoundError("Integration", handle.id)
            logger.warning(
                "Integration write lost a concurrent update",
                extra={
                    "integration_id": handle.id,
                    "platform": handle.platform.value,
                    "expected_version": handle.version,
                }
            )
            raise ConflictError(
                "Integration was modified concurrently, please retry",
                details={"integration_id": handle.id},
            )
        self.db.commit()
        handle.version = new_version

    async def write_credentials(
        self,
        handle: IntegrationHandle,
        credentials: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Encrypt and persist a full credential object.

        Keys are normalized to snake_case; the encrypted flag is set. When
        `metadata` is given it replaces the metadata field in the same
        versioned UPDATE, so token and expiry mirror never diverge.

        Raises:
            ValidationError: If the object is invalid or too large, or metadata
                contains secret-looking keys
            ConflictError: If the integration changed since it was read
        """
        credentials = normalize_credential_keys(validate_credentials_payload(credentials))
        values = {
            "credentials": encrypt_credentials(credentials),
            "credentials_encrypted": True,
        }
        if metadata is not None:
            metadata = validate_metadata_payload(metadata)
            values["platform_metadata"] = metadata

        self._versioned_update(handle, values)
        handle.credentials_format = CredentialFormat.NEW_CIPHER
        if metadata is not None:
            handle.metadata = dict(metadata)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            integration_id=handle.id,
            platform=handle.platform.value,
            metadata={"action": "credentials_updated"},
        )
        logger.info(
            "Credentials updated",
            extra={
                "integration_id": handle.id,
                "platform": handle.platform.value,
                "credential_fields": sorted(credentials.keys()),
            }
        )

    async def write_metadata(
        self,
        handle: IntegrationHandle,
        metadata: Dict[str, Any],
    ) -> None:
        """
        Persist the metadata field only.

        Raises:
            ValidationError: If metadata contains secret-looking keys
            ConflictError: If the integration changed since it was read
        """
        metadata = validate_metadata_payload(metadata)
        self._versioned_update(handle, {"platform_metadata": metadata})
        handle.metadata = dict(metadata)

        logger.info(
            "Integration metadata updated",
            extra={
                "integration_id": handle.id,
                "platform": handle.platform.value,
                "metadata_fields": sorted(metadata.keys()),
            }
        )

    async def store_integration(
        self,
        platform: Platform,
        credentials: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        status: IntegrationStatus = IntegrationStatus.ACTIVE,
    ) -> IntegrationHandle:
        """
        Create or replace the user's integration for a platform.

        One row exists per (user, platform); connecting again supersedes
        the previous credentials and reactivates a revoked row.

        Raises:
            ValidationError: If credentials or metadata are invalid
        """
        credentials = normalize_credential_keys(validate_credentials_payload(credentials))
        metadata = validate_metadata_payload(metadata)
        cipher_text = encrypt_credentials(credentials)

        integration = self._get_any(platform)
        if integration:
            integration.credentials = cipher_text
            integration.credentials_encrypted = True
            integration.platform_metadata = metadata
            integration.status = status
            integration.version = (integration.version or 0) + 1
            action = "replaced"
        else:
            integration = PlatformIntegration(
                user_id=self.user_id,
                platform_name=platform,
                credentials=cipher_text,
                credentials_encrypted=True,
                platform_metadata=metadata,
                status=status,
                version=1,
            )
            self.db.add(integration)
            action = "created"

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(integration)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_STORED,
            integration_id=integration.id,
            platform=platform.value,
            metadata={"action": action},
        )
        logger.info(
            "Integration stored",
            extra={
                "integration_id": integration.id,
                "platform": platform.value,
                "action": action,
                "status": status.value,
            }
        )
        return IntegrationHandle.from_integration(integration, CredentialFormat.NEW_CIPHER)

    async def disconnect(
        self,
        platform: Optional[Platform] = None,
        integration_id: Optional[str] = None,
        hard_delete: bool = False,
    ) -> str:
        """
        Disconnect an integration owned by this user.

        Soft delete sets status to revoked and clears the credentials;
        hard delete removes the row.

        Returns:
            The disconnected integration id

        Raises:
            ValidationError: If neither platform nor integration_id is given
            NotFoundError: If no such integration exists for this user
        """
        if integration_id:
            integration = self._get_by_id(integration_id)
        elif platform:
            integration = self._get_any(platform)
        else:
            raise ValidationError("platform_name or integration_id is required")

        if not integration:
            raise NotFoundError("Integration", integration_id or platform.value)

        integration_id = integration.id
        platform_value = integration.platform_name.value

        if hard_delete:
            self.db.delete(integration)
        else:
            integration.status = IntegrationStatus.REVOKED
            integration.credentials = None
            integration.credentials_encrypted = False
            integration.version = (integration.version or 0) + 1
        self.db.commit()

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REVOKED,
            integration_id=integration_id,
            platform=platform_value,
            metadata={"hard_delete": hard_delete},
        )
        logger.info(
            "Integration disconnected",
            extra={
                "integration_id": integration_id,
                "platform": platform_value,
                "hard_delete": hard_delete,
            }
        )
        return integration_id
