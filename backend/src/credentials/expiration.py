"""
Token expiration status derived from non-secret metadata.

Refresh writes mirror the access and refresh token expiry timestamps into
metadata, so the dashboard can show connection health without decrypting
anything.

Thresholds (days remaining):
- access token:  <= 0 expired, <= 7 expiring, <= 14 warning, else ok
- refresh token: <= 0 expired, <= 7 expiring, <= 30 warning, else ok

A connection needs reconnecting once its refresh token is expiring or expired.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ExpiryStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


ACCESS_TOKEN_THRESHOLDS = (7, 14)
REFRESH_TOKEN_THRESHOLDS = (7, 30)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch (seconds or milliseconds) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def days_until(expires_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if expires_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (expires_at - now).total_seconds() / 86400


def classify_expiry(days_left: Optional[float], thresholds: tuple) -> ExpiryStatus:
    if days_left is None:
        return ExpiryStatus.UNKNOWN
    expiring_days, warning_days = thresholds
    if days_left <= 0:
        return ExpiryStatus.EXPIRED
    if days_left <= expiring_days:
        return ExpiryStatus.EXPIRING
    if days_left <= warning_days:
        return ExpiryStatus.WARNING
    return ExpiryStatus.OK


@dataclass
class TokenExpirationStatus:
    access_token_status: ExpiryStatus
    refresh_token_status: ExpiryStatus
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None

    @property
    def needs_reconnect(self) -> bool:
        return self.refresh_token_status in (ExpiryStatus.EXPIRED, ExpiryStatus.EXPIRING)

    def to_dict(self) -> dict:
        return {
            "access_token_status": self.access_token_status.value,
            "refresh_token_status": self.refresh_token_status.value,
            "access_token_expires_at": (
                self.access_token_expires_at.isoformat() if self.access_token_expires_at else None
            ),
            "refresh_token_expires_at": (
                self.refresh_token_expires_at.isoformat() if self.refresh_token_expires_at else None
            ),
            "needs_reconnect": self.needs_reconnect,
        }


def token_expiration_status(
    metadata: Optional[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> TokenExpirationStatus:
    """Compute expiry status from an integration's metadata mirror fields."""
    metadata = metadata or {}
    access_expires = parse_timestamp(
        metadata.get("access_token_expires_at") or metadata.get("expires_at")
    )
    refresh_expires = parse_timestamp(metadata.get("refresh_token_expires_at"))

    return TokenExpirationStatus(
        access_token_status=classify_expiry(days_until(access_expires, now), ACCESS_TOKEN_THRESHOLDS),
        refresh_token_status=classify_expiry(days_until(refresh_expires, now), REFRESH_TOKEN_THRESHOLDS),
        access_token_expires_at=access_expires,
        refresh_token_expires_at=refresh_expires,
    )
