"""
Encryption migration sweep.

Walks every stored integration once and rewrites plaintext and
legacy-cipher credentials into the current AES-256-GCM format.

CONSTRAINTS:
- Operates across users (no user_id scoping)
- Idempotent: rows already in the new format are skipped, so a re-run after
  a partial sweep only touches what is left
- One bad row never aborts the sweep; its id and reason are recorded
- Each migrated row is committed on its own

Usage:
    sweep = MigrationSweep(db_session)
    report = await sweep.run()
    report.to_dict()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.credentials.encryption import encrypt_credentials
from src.credentials.formats import (
    CredentialFormat,
    FormatClassifier,
    LegacyDecryptionError,
    LegacyDecryptor,
    PgcryptoLegacyDecryptor,
    classify,
    unwrap_stored_value,
)
from src.credentials.redaction import AuditEventType, CredentialAuditLogger
from src.credentials.store import normalize_credential_keys
from src.models.base import utcnow
from src.models.platform_integration import PlatformIntegration

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    """Outcome of one migration sweep."""

    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    total: int = 0
    already_new_cipher: int = 0
    migrated_from_plain: int = 0
    migrated_from_legacy: int = 0
    skipped_empty: int = 0
    dry_run: bool = False
    errors: List[str] = field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def migrated(self) -> int:
        return self.migrated_from_plain + self.migrated_from_legacy

    def add_error(self, integration_id: str, reason: str) -> None:
        self.errors.append(f"{integration_id}: {reason}")

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at:
            duration = (self.completed_at - self.started_at).total_seconds()

        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "total": self.total,
            "already_new_cipher": self.already_new_cipher,
            "migrated_from_plain": self.migrated_from_plain,
            "migrated_from_legacy": self.migrated_from_legacy,
            "skipped_empty": self.skipped_empty,
            "dry_run": self.dry_run,
            "errors": list(self.errors),
            "duration_seconds": duration,
        }


class MigrationSweep:
    """Rewrites every non-new-cipher integration into the new cipher format."""

    def __init__(
        self,
        db_session: Session,
        legacy_decryptor: Optional[LegacyDecryptor] = None,
        dry_run: bool = False,
    ):
        self.db = db_session
        self.classifier = FormatClassifier(
            legacy_decryptor or PgcryptoLegacyDecryptor(db_session)
        )
        self.dry_run = dry_run
        self.audit = CredentialAuditLogger(None)

    def _load_integrations(self) -> List[PlatformIntegration]:
        stmt = select(PlatformIntegration).order_by(PlatformIntegration.created_at)
        return list(self.db.execute(stmt).scalars().all())

    async def _decode_for_migration(self, integration: PlatformIntegration) -> tuple:
        """
        Decode a non-new-cipher value, returning (credentials, source format).

        A string value is tried as the format its flag suggests first and as
        the other format second, since the flag is only a hint.

        Raises:
            ValueError: If no format decodes the value to a non-empty object
        """
        value = unwrap_stored_value(integration.credentials)

        if isinstance(value, dict):
            return value, CredentialFormat.PLAIN

        if not isinstance(value, str):
            raise ValueError(f"Unknown credentials type: {type(value).__name__}")

        order = [CredentialFormat.PLAIN, CredentialFormat.LEGACY_CIPHER]
        if integration.credentials_encrypted:
            order.reverse()

        reasons = []
        for fmt in order:
            try:
                credentials = await self.classifier.decode(value, fmt)
            except (LegacyDecryptionError, ValueError) as e:
                reasons.append(f"{fmt.value}: {e}")
                continue
            if fmt == CredentialFormat.LEGACY_CIPHER and not credentials:
                # decrypt_credentials() returns '{}' on failure
                reasons.append("legacy_cipher: decryption produced no data")
                continue
            return credentials, fmt

        raise ValueError("; ".join(reasons) or "could not decode credentials")

    def _persist(self, integration: PlatformIntegration, credentials: dict) -> None:
        cipher_text = encrypt_credentials(normalize_credential_keys(credentials))
        stmt = (
            update(PlatformIntegration)
            .where(PlatformIntegration.id == integration.id)
            .where(PlatformIntegration.version == integration.version)
            .values(
                credentials=cipher_text,
                credentials_encrypted=True,
                version=integration.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            raise ValueError("integration was modified during migration")
        self.db.commit()

    async def migrate_one(self, integration: PlatformIntegration, report: MigrationReport) -> None:
        """Classify, decode and re-encrypt a single integration, recording the outcome."""
        integration_id = integration.id
        platform = integration.platform_name.value if integration.platform_name else "unknown"

        fmt = classify(integration.credentials, integration.credentials_encrypted)
        if fmt == CredentialFormat.NEW_CIPHER:
            report.already_new_cipher += 1
            return
        if fmt is None:
            report.skipped_empty += 1
            return

        try:
            credentials, source = await self._decode_for_migration(integration)
        except ValueError as e:
            report.add_error(integration_id, str(e))
            self.audit.log_error(integration_id, platform, f"migration failed: {e}")
            return

        if not self.dry_run:
            try:
                self._persist(integration, credentials)
            except (SQLAlchemyError, ValueError) as e:
                self.db.rollback()
                report.add_error(integration_id, f"write failed: {type(e).__name__}")
                self.audit.log_error(integration_id, platform, "migration write failed")
                return

        if source == CredentialFormat.LEGACY_CIPHER:
            report.migrated_from_legacy += 1
        else:
            report.migrated_from_plain += 1

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_MIGRATED,
            integration_id=integration_id,
            platform=platform,
            metadata={"source_format": source.value, "dry_run": self.dry_run},
        )

    async def run(self) -> MigrationReport:
        """
        Sweep all integrations.

        Returns:
            MigrationReport with per-format counts and per-row errors
        """
        report = MigrationReport(dry_run=self.dry_run)
        integrations = self._load_integrations()
        report.total = len(integrations)

        logger.info(
            "Encryption migration started",
            extra={"total": report.total, "dry_run": self.dry_run},
        )

        for integration in integrations:
            await self.migrate_one(integration, report)

        report.completed_at = datetime.now(timezone.utc)
        logger.info(
            "Encryption migration completed",
            extra={
                "total": report.total,
                "already_new_cipher": report.already_new_cipher,
                "migrated_from_plain": report.migrated_from_plain,
                "migrated_from_legacy": report.migrated_from_legacy,
                "error_count": len(report.errors),
                "dry_run": self.dry_run,
            },
        )
        return report
