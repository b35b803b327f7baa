"""
Per-platform OAuth client credentials.

Client id/secret pairs are read from the integration's metadata first
(users may bring their own app) and from environment variables second.
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.models.platform_integration import Platform
from src.platform.errors import ConfigurationError


@dataclass(frozen=True)
class OAuthClientSource:
    """Where a platform's client pair lives in metadata and environment."""
    metadata_id_key: str
    metadata_secret_key: str
    env_id: str
    env_secret: str


OAUTH_CLIENT_SOURCES: Dict[Platform, OAuthClientSource] = {
    Platform.LINKEDIN: OAuthClientSource(
        "client_id", "client_secret", "LINKEDIN_CLIENT_ID", "LINKEDIN_CLIENT_SECRET"
    ),
    Platform.YOUTUBE: OAuthClientSource(
        "client_id", "client_secret", "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET"
    ),
    Platform.FACEBOOK: OAuthClientSource(
        "app_id", "app_secret", "FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"
    ),
    Platform.INSTAGRAM: OAuthClientSource(
        "app_id", "app_secret", "FACEBOOK_APP_ID", "FACEBOOK_APP_SECRET"
    ),
}


@dataclass(frozen=True)
class OAuthClient:
    client_id: str
    client_secret: str


def get_oauth_client(
    platform: Platform,
    metadata: Optional[Dict[str, Any]] = None,
) -> OAuthClient:
    """
    Resolve the OAuth client pair for a platform.

    Raises:
        ConfigurationError: If no complete pair is configured
    """
    source = OAUTH_CLIENT_SOURCES.get(platform)
    if source is None:
        raise ConfigurationError(f"{platform.value} has no OAuth client configuration")

    metadata = metadata or {}
    client_id = metadata.get(source.metadata_id_key) or os.getenv(source.env_id)
    client_secret = metadata.get(source.metadata_secret_key) or os.getenv(source.env_secret)

    if not client_id or not client_secret:
        raise ConfigurationError(f"{platform.value} OAuth credentials not configured")

    return OAuthClient(client_id=client_id, client_secret=client_secret)
