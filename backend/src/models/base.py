"""
Shared model mixins.

Every vault table carries created_at/updated_at audit timestamps and is
owned by exactly one user.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String


def generate_uuid() -> str:
    """Generate a new UUID4 string primary key."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="When the row was created"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="When the row was last written"
    )


class UserScopedMixin:
    """
    Adds the owning user column.

    SECURITY: every query against a user-scoped model MUST filter on user_id.
    """

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user (identity provider subject)"
    )
