"""
Database models for the credential vault.

All user data is scoped by user_id via UserScopedMixin.
"""

from src.models.base import TimestampMixin, UserScopedMixin
from src.models.platform_integration import (
    IntegrationStatus,
    Platform,
    PlatformIntegration,
)

__all__ = [
    "TimestampMixin",
    "UserScopedMixin",
    "IntegrationStatus",
    "Platform",
    "PlatformIntegration",
]
