"""
Encryption migration job - one-off or cron run of the migration sweep.

Rewrites every plaintext or legacy-cipher integration into the current
AES-256-GCM format. Safe to re-run; already migrated rows are skipped.

CONSTRAINTS:
- Operates across users (no user_id scoping)
- Respects MIGRATION_DRY_RUN for a counting-only pass
- Requires CREDENTIAL_ENCRYPTION_KEY and DATABASE_URL

Run:
    python -m src.workers.encryption_migration_job
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.credentials.encryption import validate_encryption_ready
from src.credentials.formats import LegacyDecryptor
from src.credentials.migration import MigrationReport, MigrationSweep
from src.credentials.redaction import setup_credential_logging
from src.database.session import normalize_database_url

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

MIGRATION_DRY_RUN = os.getenv("MIGRATION_DRY_RUN", "false").lower() == "true"


def _get_database_session() -> Session:
    """Create database session for the migration job."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    engine = create_engine(normalize_database_url(database_url), pool_pre_ping=True)
    session_factory = sessionmaker(
        autocommit=False, autoflush=False, bind=engine
    )
    return session_factory()


def run_migration(
    db_session: Session,
    dry_run: bool = MIGRATION_DRY_RUN,
    legacy_decryptor: Optional[LegacyDecryptor] = None,
) -> MigrationReport:
    """
    Execute the migration sweep.

    Args:
        db_session: Database session (not user-scoped)
        dry_run: If True, classify and decode without writing
        legacy_decryptor: Defaults to the database decrypt_credentials() function

    Returns:
        MigrationReport with results
    """
    validate_encryption_ready()
    sweep = MigrationSweep(db_session, legacy_decryptor=legacy_decryptor, dry_run=dry_run)
    return asyncio.run(sweep.run())


def main():
    """Entry point for the encryption migration job."""
    setup_credential_logging()
    logger.info(
        "Encryption Migration Job starting",
        extra={"dry_run": MIGRATION_DRY_RUN},
    )

    try:
        session = _get_database_session()
    except ValueError as exc:
        logger.error("Encryption Migration Job misconfigured", extra={"error": str(exc)})
        sys.exit(1)

    try:
        report = run_migration(session, dry_run=MIGRATION_DRY_RUN)
        logger.info("Encryption Migration Job report", extra=report.to_dict())
        if report.errors:
            logger.warning(
                "Some integrations could not be migrated",
                extra={"error_count": len(report.errors)},
            )
    except Exception as exc:
        logger.error(
            "Encryption Migration Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        sys.exit(1)
    finally:
        session.close()

    logger.info("Encryption Migration Job finished")


if __name__ == "__main__":
    main()
