"""
Account discovery for connected platforms.

Fetches the non-secret account structure behind a user's integration
(profiles, organizations, pages, business accounts, channels) and keeps
it in the integration's metadata so the UI and the activity fetchers can
use it without touching credentials.

Metadata and credentials are always written separately: Facebook page
tokens go to credentials (page_tokens), page names and ids to metadata.
Responses never contain tokens.

Usage:
    discovery = PlatformDiscovery(CredentialStore(db_session, user_id))
    result = await discovery.discover(Platform.FACEBOOK)
    # {"pages": [{"page_id": ..., "page_name": ..., "picture_url": ...}]}
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from src.credentials.store import CredentialStore, IntegrationHandle, credential_field
from src.integrations.social.http import (
    DEFAULT_TIMEOUT_SECONDS,
    platform_client,
    platform_request,
)
from src.models.base import utcnow
from src.models.platform_integration import Platform
from src.platform.errors import UpstreamUnavailableError, ValidationError
from src.services.platform_activity import GRAPH_API_URL, TWITTER_API_URL, YOUTUBE_API_URL, twitter_auth_headers

logger = logging.getLogger(__name__)

LINKEDIN_USERINFO_URL = "https://api.linkedin.com/v2/userinfo"
LINKEDIN_ORG_ACLS_URL = "https://api.linkedin.com/v2/organizationAcls"
OPENAI_MODELS_URL = "https://api.openai.com/v1/models"

OPENAI_KEY_PREFIX = "sk-"


def _require_access_token(credentials: Dict[str, Any]) -> str:
    token = credential_field(credentials, "access_token")
    if not token:
        raise ValidationError("No access token found")
    return token


# =============================================================================
# OpenAI key validation
# =============================================================================

async def validate_openai_key(
    api_key: Optional[str],
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict:
    """
    Check an OpenAI API key against the models endpoint.

    Returns:
        {"valid": True}

    Raises:
        ValidationError: Missing, malformed, rejected or rate-limited key
        UpstreamUnavailableError: OpenAI could not be reached
    """
    if not api_key:
        raise ValidationError("API key is required")
    if not api_key.startswith(OPENAI_KEY_PREFIX):
        raise ValidationError('Invalid API key format. OpenAI keys start with "sk-"')

    async with platform_client(http_client, timeout) as client:
        try:
            response = await client.get(
                OPENAI_MODELS_URL,
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("Could not reach openai", platform="openai") from e

    if response.is_success:
        return {"valid": True}

    logger.info(
        "OpenAI key rejected",
        extra={"status_code": response.status_code},
    )
    if response.status_code == 401:
        raise ValidationError("Invalid API key. Please check your key and try again.")
    if response.status_code == 429:
        raise ValidationError("Rate limited. Please try again later.")
    raise ValidationError("Invalid API key")


# =============================================================================
# Discovery
# =============================================================================

class PlatformDiscovery:
    """Syncs account structure for one user's integrations into metadata."""

    def __init__(
        self,
        store: CredentialStore,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.http_client = http_client
        self.timeout = timeout
        self._handlers = {
            Platform.LINKEDIN: self._discover_linkedin,
            Platform.FACEBOOK: self._discover_facebook,
            Platform.INSTAGRAM: self._discover_instagram,
            Platform.YOUTUBE: self._discover_youtube,
            Platform.TWITTER: self._discover_twitter,
            Platform.OPENAI: self._discover_openai,
        }

    async def discover(self, platform: Platform) -> dict:
        """
        Fetch and store account structure for the user's active integration.

        Returns:
            The discovered non-secret data

        Raises:
            ValidationError: Platform not supported or token missing
            NotFoundError: No active integration
            UpstreamError: The platform rejected the call
        """
        handler = self._handlers.get(platform)
        if handler is None:
            raise ValidationError(f"Account discovery is not supported for {platform.value}")

        credentials, handle = await self.store.fetch_decrypted(platform)
        async with platform_client(self.http_client, self.timeout) as client:
            discovered = await handler(client, credentials, handle)

        await self.store.write_metadata(handle, {
            **handle.metadata,
            **discovered,
            "last_synced": utcnow().isoformat(),
        })
        logger.info(
            "Platform accounts discovered",
            extra={
                "integration_id": handle.id,
                "platform": platform.value,
                "fields": sorted(discovered.keys()),
            },
        )
        return discovered

    # -------------------------------------------------------------------------
    # LinkedIn
    # -------------------------------------------------------------------------

    async def _discover_linkedin(self, client, credentials, handle: IntegrationHandle) -> dict:
        headers = {"Authorization": f"Bearer {_require_access_token(credentials)}"}

        profile = await platform_request(
            client, "GET", LINKEDIN_USERINFO_URL, Platform.LINKEDIN.value, headers=headers,
        )
        personal_info = {
            "linkedin_id": profile.get("sub"),
            "name": profile.get("name"),
            "email": profile.get("email"),
            "picture": profile.get("picture"),
        }

        acls = await platform_request(
            client,
            "GET",
            LINKEDIN_ORG_ACLS_URL,
            Platform.LINKEDIN.value,
            params={
                "q": "roleAssignee",
                "role": "ADMINISTRATOR",
                "projection": "(elements*(organization~(id,localizedName,logoV2(original~:playableStreams))))",
            },
            headers={**headers, "X-Restli-Protocol-Version": "2.0.0"},
        )
        organizations = []
        for element in acls.get("elements") or []:
            org = element.get("organization~") or {}
            if not org.get("id"):
                continue
            streams = ((org.get("logoV2") or {}).get("original~") or {}).get("elements") or []
            logo_url = None
            if streams:
                identifiers = streams[0].get("identifiers") or []
                logo_url = identifiers[0].get("identifier") if identifiers else None
            organizations.append({
                "company_id": str(org["id"]),
                "company_name": org.get("localizedName"),
                "logo_url": logo_url,
            })

        return {"personal_info": personal_info, "organizations": organizations}

    # -------------------------------------------------------------------------
    # Facebook / Instagram
    # -------------------------------------------------------------------------

    async def _fetch_pages(self, client, token: str, platform: Platform) -> List[dict]:
        data = await platform_request(
            client,
            "GET",
            f"{GRAPH_API_URL}/me/accounts",
            platform.value,
            params={"fields": "id,name,access_token,picture{url}", "access_token": token},
        )
        return [page for page in data.get("data") or [] if page.get("id")]

    async def _discover_facebook(self, client, credentials, handle: IntegrationHandle) -> dict:
        token = _require_access_token(credentials)
        raw_pages = await self._fetch_pages(client, token, Platform.FACEBOOK)

        page_tokens = {}
        pages = []
        for page in raw_pages:
            if page.get("access_token"):
                page_tokens[page["id"]] = page["access_token"]
            pages.append({
                "page_id": page["id"],
                "page_name": page.get("name"),
                "picture_url": ((page.get("picture") or {}).get("data") or {}).get("url"),
            })

        await self.store.write_credentials(handle, {**credentials, "page_tokens": page_tokens})
        return {"pages": pages}

    async def _discover_instagram(self, client, credentials, handle: IntegrationHandle) -> dict:
        token = _require_access_token(credentials)
        accounts = []
        for page in await self._fetch_pages(client, token, Platform.INSTAGRAM):
            data = await platform_request(
                client,
                "GET",
                f"{GRAPH_API_URL}/{page['id']}",
                Platform.INSTAGRAM.value,
                params={
                    "fields": "instagram_business_account{id,username,profile_picture_url}",
                    "access_token": page.get("access_token") or token,
                },
            )
            business = data.get("instagram_business_account")
            if not business:
                continue
            accounts.append({
                "ig_business_id": business.get("id"),
                "ig_username": business.get("username"),
                "profile_picture_url": business.get("profile_picture_url"),
                "connected_page_id": page["id"],
                "connected_page_name": page.get("name"),
            })
        return {"accounts": accounts}

    # -------------------------------------------------------------------------
    # YouTube
    # -------------------------------------------------------------------------

    async def _discover_youtube(self, client, credentials, handle: IntegrationHandle) -> dict:
        data = await platform_request(
            client,
            "GET",
            f"{YOUTUBE_API_URL}/channels",
            Platform.YOUTUBE.value,
            params={"part": "snippet,contentDetails,statistics", "mine": "true"},
            headers={"Authorization": f"Bearer {_require_access_token(credentials)}"},
        )
        channels = []
        for channel in data.get("items") or []:
            snippet = channel.get("snippet") or {}
            statistics = channel.get("statistics") or {}
            channels.append({
                "channel_id": channel.get("id"),
                "channel_name": snippet.get("title"),
                "description": snippet.get("description"),
                "thumbnail_url": ((snippet.get("thumbnails") or {}).get("default") or {}).get("url"),
                "subscriber_count": statistics.get("subscriberCount"),
                "video_count": statistics.get("videoCount"),
                "uploads_playlist_id": (
                    (channel.get("contentDetails") or {}).get("relatedPlaylists") or {}
                ).get("uploads"),
            })
        return {"channels": channels}

    # -------------------------------------------------------------------------
    # Twitter
    # -------------------------------------------------------------------------

    async def _discover_twitter(self, client, credentials, handle: IntegrationHandle) -> dict:
        url = f"{TWITTER_API_URL}/users/me"
        params = {"user.fields": "id,name,username,profile_image_url,description,public_metrics"}
        data = await platform_request(
            client,
            "GET",
            url,
            Platform.TWITTER.value,
            params=params,
            headers=twitter_auth_headers(credentials, "GET", url, params),
        )
        user = data.get("data") or {}
        return {
            "personal_info": {
                "user_id": user.get("id"),
                "username": user.get("username"),
                "name": user.get("name"),
                "profile_image_url": user.get("profile_image_url"),
                "description": user.get("description"),
                "public_metrics": user.get("public_metrics"),
            }
        }

    # -------------------------------------------------------------------------
    # OpenAI
    # -------------------------------------------------------------------------

    async def _discover_openai(self, client, credentials, handle: IntegrationHandle) -> dict:
        result = await validate_openai_key(credential_field(credentials, "api_key"), http_client=client)
        return {"key_valid": result["valid"], "last_validated": utcnow().isoformat()}
