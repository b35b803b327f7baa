"""
Token refresh for platform integrations.

Each refreshable platform has a strategy that turns the stored refresh
token (or, for Facebook and Instagram, the current long-lived token) into
a new access token. TokenRefresher runs the shared protocol around it:

1. Load and decrypt the active integration
2. Resolve the OAuth client pair (metadata first, environment second)
3. Call the platform's token endpoint
4. Merge the new access token into the existing credentials
5. Write credentials, then mirror the expiry timestamps into metadata

Refresh-token anchor: when the platform does not issue a new refresh token
the stored refresh token and its refresh_token_expires_at are left exactly
as they were.

SECURITY REQUIREMENTS:
- Tokens are encrypted before storage
- No plaintext tokens in logs or results
- Audit events for all refresh operations

Usage:
    refresher = TokenRefresher(CredentialStore(db_session, user_id))
    result = await refresher.refresh(Platform.LINKEDIN)
    result.to_dict()  # {"message": ..., "expires_at": ..., "expires_in": ...}
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from src.config.oauth_clients import OAuthClient, get_oauth_client
from src.credentials.redaction import AuditEventType
from src.credentials.store import CredentialStore, credential_field
from src.integrations.social.http import (
    DEFAULT_TIMEOUT_SECONDS,
    platform_client,
    platform_request,
)
from src.models.base import utcnow
from src.models.platform_integration import IntegrationStatus, Platform
from src.platform.errors import AppError, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

LINKEDIN_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FACEBOOK_TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"

SIXTY_DAYS_SECONDS = 60 * 24 * 60 * 60  # 5184000

REFRESH_SUCCESS_MESSAGE = "Token refreshed and stored securely"


@dataclass
class TokenGrant:
    """
    Tokens returned by a platform token endpoint.

    SECURITY: never logged, never returned to callers.
    """
    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    refresh_token_expires_in: Optional[int] = None

    def __repr__(self) -> str:
        return f"<TokenGrant(expires_in={self.expires_in}, has_refresh_token={bool(self.refresh_token)})>"


@dataclass
class RefreshResult:
    """
    Result of a token refresh.

    SECURITY: Does NOT include token values.
    """
    platform: Platform
    integration_id: str
    expires_at: datetime
    expires_in: int
    refresh_token_rotated: bool = False
    message: str = REFRESH_SUCCESS_MESSAGE

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "platform": self.platform.value,
            "integration_id": self.integration_id,
            "expires_at": self.expires_at.isoformat(),
            "expires_in": self.expires_in,
        }


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _require_access_token(data: Dict[str, Any], platform: Platform) -> str:
    token = data.get("access_token")
    if not token:
        raise UpstreamError(f"{platform.value} did not return an access token", platform=platform.value)
    return token


# =============================================================================
# Strategies
# =============================================================================

class RefreshStrategy(ABC):
    """Platform-specific token exchange."""

    platform: Platform
    # Used when the token endpoint omits expires_in
    default_access_lifetime: int = 3600
    # Credential field holding the token to exchange
    source_field: str = "refresh_token"
    missing_token_message: str = "No refresh token found. Please reconnect your account."

    def source_token(self, credentials: Dict[str, Any]) -> Optional[str]:
        return credential_field(credentials, self.source_field)

    @abstractmethod
    async def request_grant(
        self,
        client: httpx.AsyncClient,
        token: str,
        oauth_client: OAuthClient,
    ) -> TokenGrant:
        """
        Exchange a token at the platform's token endpoint.

        Raises:
            UpstreamError: The platform rejected the token
            UpstreamUnavailableError: The platform could not be reached
        """
        pass


class LinkedInRefreshStrategy(RefreshStrategy):
    """LinkedIn refresh_token grant (programmatic refresh tokens)."""

    platform = Platform.LINKEDIN
    default_access_lifetime = SIXTY_DAYS_SECONDS

    async def request_grant(self, client, token, oauth_client) -> TokenGrant:
        data = await platform_request(
            client,
            "POST",
            LINKEDIN_TOKEN_URL,
            self.platform.value,
            data={
                "grant_type": "refresh_token",
                "refresh_token": token,
                "client_id": oauth_client.client_id,
                "client_secret": oauth_client.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return TokenGrant(
            access_token=_require_access_token(data, self.platform),
            expires_in=_as_int(data.get("expires_in")),
            refresh_token=data.get("refresh_token"),
            refresh_token_expires_in=_as_int(data.get("refresh_token_expires_in")),
        )


class GoogleRefreshStrategy(RefreshStrategy):
    """Google OAuth refresh_token grant for YouTube."""

    platform = Platform.YOUTUBE
    default_access_lifetime = 3600

    async def request_grant(self, client, token, oauth_client) -> TokenGrant:
        data = await platform_request(
            client,
            "POST",
            GOOGLE_TOKEN_URL,
            self.platform.value,
            data={
                "grant_type": "refresh_token",
                "refresh_token": token,
                "client_id": oauth_client.client_id,
                "client_secret": oauth_client.client_secret,
            },
        )
        return TokenGrant(
            access_token=_require_access_token(data, self.platform),
            expires_in=_as_int(data.get("expires_in")),
            # Google only returns a refresh token when it rotates it
            refresh_token=data.get("refresh_token"),
        )


class FacebookExchangeStrategy(RefreshStrategy):
    """
    Facebook long-lived token exchange.

    Facebook has no refresh tokens; a still-valid long-lived token is
    exchanged for a fresh one. Instagram business accounts use the same
    Facebook login token.
    """

    default_access_lifetime = SIXTY_DAYS_SECONDS
    source_field = "access_token"
    missing_token_message = "No access token found. Please reconnect your account."

    def __init__(self, platform: Platform = Platform.FACEBOOK):
        self.platform = platform

    async def request_grant(self, client, token, oauth_client) -> TokenGrant:
        data = await platform_request(
            client,
            "GET",
            FACEBOOK_TOKEN_URL,
            self.platform.value,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": oauth_client.client_id,
                "client_secret": oauth_client.client_secret,
                "fb_exchange_token": token,
            },
        )
        return TokenGrant(
            access_token=_require_access_token(data, self.platform),
            expires_in=_as_int(data.get("expires_in")),
        )


# Twitter (OAuth 1.0a), OpenAI (API key) and Threads tokens are not refreshable
REFRESH_STRATEGIES: Dict[Platform, RefreshStrategy] = {
    Platform.LINKEDIN: LinkedInRefreshStrategy(),
    Platform.YOUTUBE: GoogleRefreshStrategy(),
    Platform.FACEBOOK: FacebookExchangeStrategy(Platform.FACEBOOK),
    Platform.INSTAGRAM: FacebookExchangeStrategy(Platform.INSTAGRAM),
}


# =============================================================================
# Refresher
# =============================================================================

class TokenRefresher:
    """
    Refreshes a user's platform tokens through the credential store.

    No retries: a failed refresh surfaces immediately and the caller
    decides whether to retry or ask the user to reconnect.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: Optional[httpx.AsyncClient] = None,
        strategies: Optional[Dict[Platform, RefreshStrategy]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.http_client = http_client
        self.strategies = strategies if strategies is not None else REFRESH_STRATEGIES
        self.timeout = timeout

    def get_strategy(self, platform: Platform) -> RefreshStrategy:
        """
        Raises:
            ValidationError: If the platform's tokens cannot be refreshed
        """
        strategy = self.strategies.get(platform)
        if strategy is None:
            raise ValidationError(f"Token refresh is not supported for {platform.value}")
        return strategy

    async def refresh(self, platform: Platform) -> RefreshResult:
        """
        Refresh the active integration's access token.

        Raises:
            ValidationError: Platform not refreshable or no token stored
            NotFoundError: No active integration
            ConfigurationError: OAuth client pair missing
            UpstreamError: Platform rejected the token (user must reconnect)
            UpstreamUnavailableError: Platform unreachable
            ConflictError: Integration written concurrently
        """
        strategy = self.get_strategy(platform)
        credentials, handle = await self.store.fetch_decrypted(platform)

        token = strategy.source_token(credentials)
        if not token:
            raise ValidationError(strategy.missing_token_message)

        oauth_client = get_oauth_client(platform, handle.metadata)

        try:
            async with platform_client(self.http_client, self.timeout) as client:
                grant = await strategy.request_grant(client, token, oauth_client)
        except AppError as e:
            self.store.audit.log_error(handle.id, platform.value, f"refresh failed: {e.message}")
            raise

        now = utcnow()
        expires_in = grant.expires_in or strategy.default_access_lifetime
        expires_at = now + timedelta(seconds=expires_in)

        updated = dict(credentials)
        updated["access_token"] = grant.access_token
        updated["expires_at"] = expires_at.isoformat()

        metadata = dict(handle.metadata)
        metadata["expires_at"] = expires_at.isoformat()
        metadata["access_token_expires_at"] = expires_at.isoformat()
        metadata["last_refreshed_at"] = now.isoformat()

        current_refresh_token = credential_field(credentials, "refresh_token")
        rotated = bool(grant.refresh_token) and grant.refresh_token != current_refresh_token
        if rotated:
            updated["refresh_token"] = grant.refresh_token
            if grant.refresh_token_expires_in:
                refresh_expires_at = (now + timedelta(seconds=grant.refresh_token_expires_in)).isoformat()
                updated["refresh_token_expires_at"] = refresh_expires_at
                metadata["refresh_token_expires_at"] = refresh_expires_at

        await self.store.write_credentials(handle, updated, metadata=metadata)

        self.store.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            integration_id=handle.id,
            platform=platform.value,
            metadata={
                "expires_at": expires_at.isoformat(),
                "refresh_token_rotated": rotated,
            },
        )
        logger.info(
            "Token refreshed",
            extra={
                "integration_id": handle.id,
                "platform": platform.value,
                "expires_at": expires_at.isoformat(),
                "refresh_token_rotated": rotated,
            },
        )

        return RefreshResult(
            platform=platform,
            integration_id=handle.id,
            expires_at=expires_at,
            expires_in=expires_in,
            refresh_token_rotated=rotated,
        )

    async def exchange_facebook_token(
        self,
        short_lived_token: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RefreshResult:
        """
        Exchange a short-lived Facebook login token and store the long-lived one.

        Updates the active Facebook integration if one exists, otherwise
        creates it. The long-lived token is never returned.

        Raises:
            ValidationError: No token supplied
            ConfigurationError: Facebook app credentials missing
            UpstreamError: Facebook rejected the token
        """
        if not short_lived_token:
            raise ValidationError("short_lived_token is required")

        platform = Platform.FACEBOOK
        strategy = self.get_strategy(platform)

        try:
            credentials, handle = await self.store.fetch_decrypted(platform)
        except NotFoundError:
            credentials, handle = {}, None

        oauth_client = get_oauth_client(
            platform, {**(handle.metadata if handle else {}), **(metadata or {})}
        )
        async with platform_client(self.http_client, self.timeout) as client:
            grant = await strategy.request_grant(client, short_lived_token, oauth_client)

        now = utcnow()
        expires_in = grant.expires_in or strategy.default_access_lifetime
        expires_at = now + timedelta(seconds=expires_in)

        updated = dict(credentials)
        updated["access_token"] = grant.access_token
        updated["expires_at"] = expires_at.isoformat()
        mirrored = {
            "expires_at": expires_at.isoformat(),
            "access_token_expires_at": expires_at.isoformat(),
            "last_refreshed_at": now.isoformat(),
        }

        if handle is None:
            handle = await self.store.store_integration(
                platform,
                updated,
                metadata={**(metadata or {}), **mirrored},
                status=IntegrationStatus.ACTIVE,
            )
        else:
            await self.store.write_credentials(handle, updated, metadata={**handle.metadata, **mirrored})

        self.store.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            integration_id=handle.id,
            platform=platform.value,
            metadata={"action": "token_exchanged", "expires_at": expires_at.isoformat()},
        )
        return RefreshResult(
            platform=platform,
            integration_id=handle.id,
            expires_at=expires_at,
            expires_in=expires_in,
            message="Token exchanged and stored securely",
        )
