"""
PlatformIntegration model - one user's connection to one social platform.

SECURITY REQUIREMENTS:
- credentials hold either a plaintext object (pre-migration rows) or an
  AES-256-GCM cipher string; they are NEVER logged or returned to callers
- metadata is non-secret (account names, avatars, expiry mirrors)
- All access is user-scoped

Concurrency:
- version is checked and incremented on every credential or metadata write
  so that two refreshes of the same integration cannot silently overwrite
  each other
"""

import enum

from sqlalchemy import (
    JSON, Boolean, Column, Enum, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from src.db_base import Base
from src.models.base import TimestampMixin, UserScopedMixin, generate_uuid

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Platform(str, enum.Enum):
    """Supported social platforms."""
    LINKEDIN = "linkedin"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    OPENAI = "openai"
    THREADS = "threads"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """
        Resolve a platform name case-insensitively.

        Raises:
            ValueError: If the name is not a supported platform
        """
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unsupported platform: {value}") from None


class IntegrationStatus(str, enum.Enum):
    """Integration lifecycle status."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    ERROR = "error"
    EXPIRED = "expired"
    REVOKED = "revoked"  # Disconnected by the user


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class PlatformIntegration(Base, TimestampMixin, UserScopedMixin):
    """
    Stored binding of a user to a platform's credentials and metadata.

    Only ACTIVE integrations participate in refresh and activity fetches.
    """

    __tablename__ = "platform_integrations"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    platform_name = Column(
        Enum(Platform, values_callable=_enum_values, name="platform_name"),
        nullable=False,
        comment="Social platform this integration connects"
    )

    # Either a JSON object (legacy plaintext) or a cipher string - NEVER log
    credentials = Column(
        JSONType,
        nullable=True,
        comment="Encrypted credential blob - NEVER log"
    )
    credentials_encrypted = Column(
        Boolean,
        default=False,
        nullable=False,
        comment="Hint that credentials are encrypted; the value shape is authoritative"
    )

    # Attribute is not named `metadata`, which is reserved on declarative models
    platform_metadata = Column(
        "metadata",
        JSONType,
        nullable=True,
        comment="Non-secret account data and expiry mirrors"
    )

    status = Column(
        Enum(IntegrationStatus, values_callable=_enum_values, name="integration_status"),
        default=IntegrationStatus.ACTIVE,
        nullable=False,
        index=True,
        comment="Current integration status"
    )

    version = Column(
        Integer,
        default=1,
        nullable=False,
        comment="Optimistic concurrency counter"
    )

    __table_args__ = (
        Index("ix_platform_integrations_user_status", "user_id", "status"),
        UniqueConstraint(
            "user_id", "platform_name",
            name="uq_platform_integrations_user_platform"
        ),
    )

    def __repr__(self) -> str:
        """Safe repr - NEVER include credential values."""
        return (
            f"<PlatformIntegration("
            f"id={self.id}, "
            f"platform={self.platform_name}, "
            f"status={self.status}, "
            f"version={self.version})>"
        )

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE

    @property
    def metadata_dict(self) -> dict:
        return dict(self.platform_metadata or {})

    def to_safe_dict(self) -> dict:
        """
        Return dictionary safe for logging/API responses.

        SECURITY: Excludes the credential blob entirely.
        """
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform_name": self.platform_name.value if self.platform_name else None,
            "status": self.status.value if self.status else None,
            "metadata": self.metadata_dict,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
