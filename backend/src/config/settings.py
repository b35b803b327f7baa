"""
Vault configuration from environment.

Required:
- CREDENTIAL_ENCRYPTION_KEY: base64 32-byte AES key
- AUTOMATION_API_KEY:        shared secret for trusted automation callers
- DATABASE_URL:              database connection URL

Optional:
- IDENTITY_JWT_SECRET / IDENTITY_JWT_AUDIENCE: local identity token verification
- IDENTITY_PROVIDER_URL / IDENTITY_PROVIDER_API_KEY: remote identity verification
- RATE_LIMIT_ENABLED, RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS,
  RATE_LIMIT_BACKEND (memory | redis), REDIS_URL
- ACTIVITY_FEED_LIMIT, PLATFORM_HTTP_TIMEOUT_SECONDS

Missing required values raise ConfigurationError when the application
starts, never per request.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from src.database.session import normalize_database_url
from src.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_MAX = 100
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_ACTIVITY_FEED_LIMIT = 10
DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number") from None


@dataclass
class VaultSettings:
    """Process configuration for the credential vault."""
    encryption_key: str
    automation_api_key: str
    database_url: str
    identity_jwt_secret: Optional[str] = None
    identity_jwt_audience: Optional[str] = "authenticated"
    identity_provider_url: Optional[str] = None
    identity_provider_api_key: Optional[str] = None
    rate_limit_enabled: bool = True
    rate_limit_max: int = DEFAULT_RATE_LIMIT_MAX
    rate_limit_window_seconds: int = DEFAULT_RATE_LIMIT_WINDOW_SECONDS
    rate_limit_backend: str = "memory"
    redis_url: Optional[str] = None
    activity_feed_limit: int = DEFAULT_ACTIVITY_FEED_LIMIT
    http_timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> "VaultSettings":
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError: If a required value is missing or malformed
        """
        missing = [
            name for name in ("CREDENTIAL_ENCRYPTION_KEY", "AUTOMATION_API_KEY", "DATABASE_URL")
            if not os.getenv(name)
        ]
        if missing:
            logger.error("Vault configuration incomplete", extra={"missing": missing})
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

        backend = os.getenv("RATE_LIMIT_BACKEND", "memory").lower()
        if backend not in ("memory", "redis"):
            raise ConfigurationError("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")

        settings = cls(
            encryption_key=os.environ["CREDENTIAL_ENCRYPTION_KEY"].strip(),
            automation_api_key=os.environ["AUTOMATION_API_KEY"],
            database_url=normalize_database_url(os.environ["DATABASE_URL"]),
            identity_jwt_secret=os.getenv("IDENTITY_JWT_SECRET") or None,
            identity_jwt_audience=os.getenv("IDENTITY_JWT_AUDIENCE", "authenticated") or None,
            identity_provider_url=os.getenv("IDENTITY_PROVIDER_URL") or None,
            identity_provider_api_key=os.getenv("IDENTITY_PROVIDER_API_KEY") or None,
            rate_limit_enabled=_env_flag("RATE_LIMIT_ENABLED"),
            rate_limit_max=_env_int("RATE_LIMIT_MAX", DEFAULT_RATE_LIMIT_MAX),
            rate_limit_window_seconds=_env_int(
                "RATE_LIMIT_WINDOW_SECONDS", DEFAULT_RATE_LIMIT_WINDOW_SECONDS
            ),
            rate_limit_backend=backend,
            redis_url=os.getenv("REDIS_URL") or None,
            activity_feed_limit=_env_int("ACTIVITY_FEED_LIMIT", DEFAULT_ACTIVITY_FEED_LIMIT),
            http_timeout_seconds=_env_float(
                "PLATFORM_HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS
            ),
        )

        if settings.rate_limit_backend == "redis" and not settings.redis_url:
            raise ConfigurationError("REDIS_URL is required when RATE_LIMIT_BACKEND=redis")

        if not settings.identity_jwt_secret and not settings.identity_provider_url:
            logger.warning(
                "Identity token verification not configured; only shared-secret callers will authenticate"
            )

        return settings
