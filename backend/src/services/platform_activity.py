"""
Recent-activity fetchers for connected social platforms.

Each fetcher reads the account ids a discovery sync stored in metadata
(falling back to fields older rows kept inside credentials), calls the
platform's "recent posts" endpoint and normalizes the results to
ActivityItem. Fetchers are read-only: they never write credentials.

A failing account inside one platform is logged and skipped; a failure
of the platform as a whole propagates to the aggregator, which isolates
it from the other platforms.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from src.credentials.store import credential_field
from src.integrations.social.http import platform_request
from src.integrations.social.oauth1 import oauth1_authorization_header
from src.models.platform_integration import Platform
from src.platform.errors import AppError, ValidationError

logger = logging.getLogger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v18.0"
LINKEDIN_UGC_POSTS_URL = "https://api.linkedin.com/v2/ugcPosts"
YOUTUBE_API_URL = "https://www.googleapis.com/youtube/v3"
TWITTER_API_URL = "https://api.twitter.com/2"

# Posts requested per account
POSTS_PER_ACCOUNT = 5


@dataclass
class Engagement:
    likes: Optional[int] = None
    comments: Optional[int] = None
    shares: Optional[int] = None
    views: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
            "views": self.views,
        }


@dataclass
class ActivityItem:
    """One published post, normalized across platforms."""
    id: str
    platform: Platform
    account_name: str
    content: str
    published_at: datetime
    account_id: Optional[str] = None
    media_url: Optional[str] = None
    permalink: Optional[str] = None
    engagement: Engagement = field(default_factory=Engagement)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform.value,
            "account_name": self.account_name,
            "account_id": self.account_id,
            "content": self.content,
            "media_url": self.media_url,
            "permalink": self.permalink,
            "published_at": self.published_at.isoformat(),
            "engagement": self.engagement.to_dict(),
        }


ActivityFetcher = Callable[
    [httpx.AsyncClient, Dict[str, Any], Dict[str, Any]],
    Awaitable[List[ActivityItem]],
]


# =============================================================================
# Helpers
# =============================================================================

def _parse_datetime(value: Any) -> datetime:
    """ISO-8601 string or epoch milliseconds to an aware datetime."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        # Graph API uses +0000 offsets, Twitter and YouTube use Z
        text = value.replace("Z", "+00:00")
        if len(text) > 5 and text[-5] in "+-" and text[-3] != ":":
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _summary_count(data: Dict[str, Any], key: str) -> Optional[int]:
    summary = (data.get(key) or {}).get("summary") or {}
    return summary.get("total_count")


def _account_list(
    metadata: Dict[str, Any],
    credentials: Dict[str, Any],
    key: str,
) -> List[Dict[str, Any]]:
    accounts = metadata.get(key) or credentials.get(key) or []
    return [account for account in accounts if isinstance(account, dict)]


def _require_access_token(credentials: Dict[str, Any]) -> str:
    token = credential_field(credentials, "access_token")
    if not token:
        raise ValidationError("No access token found")
    return token


def _log_account_failure(platform: Platform, account_id: Any, error: AppError) -> None:
    logger.warning(
        "Activity fetch failed for account",
        extra={
            "platform": platform.value,
            "account_id": account_id,
            "error_code": error.code,
        },
    )


# =============================================================================
# LinkedIn
# =============================================================================

def _linkedin_authors(metadata: Dict[str, Any], credentials: Dict[str, Any]) -> List[tuple]:
    authors = []
    personal_info = metadata.get("personal_info") or credentials.get("personal_info") or {}
    if personal_info.get("linkedin_id"):
        authors.append((
            f"urn:li:person:{personal_info['linkedin_id']}",
            personal_info.get("name") or "LinkedIn Personal",
            personal_info["linkedin_id"],
        ))
    organizations = metadata.get("organizations") or credentials.get("companies") or []
    for org in organizations:
        if isinstance(org, dict) and org.get("company_id"):
            authors.append((
                f"urn:li:organization:{org['company_id']}",
                org.get("company_name") or "LinkedIn Company",
                str(org["company_id"]),
            ))
    return authors


async def fetch_linkedin_activity(
    client: httpx.AsyncClient,
    credentials: Dict[str, Any],
    metadata: Dict[str, Any],
) -> List[ActivityItem]:
    token = _require_access_token(credentials)
    headers = {
        "Authorization": f"Bearer {token}",
        "X-Restli-Protocol-Version": "2.0.0",
    }

    items: List[ActivityItem] = []
    for author_urn, account_name, account_id in _linkedin_authors(metadata, credentials):
        try:
            data = await platform_request(
                client,
                "GET",
                LINKEDIN_UGC_POSTS_URL,
                Platform.LINKEDIN.value,
                params={"q": "authors", "authors": f"List({author_urn})", "count": POSTS_PER_ACCOUNT},
                headers=headers,
            )
        except AppError as e:
            _log_account_failure(Platform.LINKEDIN, account_id, e)
            continue

        for post in data.get("elements") or []:
            share = (post.get("specificContent") or {}).get("com.linkedin.ugc.ShareContent") or {}
            items.append(ActivityItem(
                id=post.get("id", ""),
                platform=Platform.LINKEDIN,
                account_name=account_name,
                account_id=account_id,
                content=(share.get("shareCommentary") or {}).get("text") or "",
                permalink=f"https://www.linkedin.com/feed/update/{post.get('id', '')}",
                published_at=_parse_datetime((post.get("created") or {}).get("time")),
            ))
    return items


# =============================================================================
# Facebook / Instagram
# =============================================================================

async def fetch_facebook_activity(
    client: httpx.AsyncClient,
    credentials: Dict[str, Any],
    metadata: Dict[str, Any],
) -> List[ActivityItem]:
    user_token = _require_access_token(credentials)
    page_tokens = credentials.get("page_tokens") or {}

    pages = _account_list(metadata, credentials, "pages")
    if not pages and credentials.get("page_id"):
        pages = [{
            "page_id": credentials["page_id"],
            "page_name": credentials.get("page_name") or "Facebook Page",
        }]

    items: List[ActivityItem] = []
    for page in pages:
        page_id = page.get("page_id")
        if not page_id:
            continue
        try:
            data = await platform_request(
                client,
                "GET",
                f"{GRAPH_API_URL}/{page_id}/feed",
                Platform.FACEBOOK.value,
                params={
                    "fields": "id,message,created_time,permalink_url,shares,"
                              "likes.summary(true),comments.summary(true)",
                    "limit": POSTS_PER_ACCOUNT,
                    "access_token": page_tokens.get(page_id) or user_token,
                },
            )
        except AppError as e:
            _log_account_failure(Platform.FACEBOOK, page_id, e)
            continue

        for post in data.get("data") or []:
            items.append(ActivityItem(
                id=post.get("id", ""),
                platform=Platform.FACEBOOK,
                account_name=page.get("page_name") or "Facebook Page",
                account_id=page_id,
                content=post.get("message") or "",
                permalink=post.get("permalink_url"),
                published_at=_parse_datetime(post.get("created_time")),
                engagement=Engagement(
                    likes=_summary_count(post, "likes"),
                    comments=_summary_count(post, "comments"),
                    shares=(post.get("shares") or {}).get("count"),
                ),
            ))
    return items


async def fetch_instagram_activity(
    client: httpx.AsyncClient,
    credentials: Dict[str, Any],
    metadata: Dict[str, Any],
) -> List[ActivityItem]:
    token = _require_access_token(credentials)

    accounts = _account_list(metadata, credentials, "accounts")
    if not accounts and credentials.get("ig_business_id"):
        accounts = [{
            "ig_business_id": credentials["ig_business_id"],
            "ig_username": credentials.get("ig_username"),
        }]

    items: List[ActivityItem] = []
    for account in accounts:
        account_id = account.get("ig_business_id")
        if not account_id:
            continue
        try:
            data = await platform_request(
                client,
                "GET",
                f"{GRAPH_API_URL}/{account_id}/media",
                Platform.INSTAGRAM.value,
                params={
                    "fields": "id,caption,media_type,media_url,thumbnail_url,permalink,"
                              "timestamp,like_count,comments_count",
                    "limit": POSTS_PER_ACCOUNT,
                    "access_token": token,
                },
            )
        except AppError as e:
            _log_account_failure(Platform.INSTAGRAM, account_id, e)
            continue

        username = account.get("ig_username")
        for media in data.get("data") or []:
            if media.get("media_type") == "VIDEO":
                media_url = media.get("thumbnail_url")
            else:
                media_url = media.get("media_url")
            items.append(ActivityItem(
                id=media.get("id", ""),
                platform=Platform.INSTAGRAM,
                account_name=f"@{username}" if username else "Instagram",
                account_id=account_id,
                content=media.get("caption") or "",
                media_url=media_url,
                permalink=media.get("permalink"),
                published_at=_parse_datetime(media.get("timestamp")),
                engagement=Engagement(
                    likes=media.get("like_count"),
                    comments=media.get("comments_count"),
                ),
            ))
    return items


# =============================================================================
# YouTube
# =============================================================================

async def fetch_youtube_activity(
    client: httpx.AsyncClient,
    credentials: Dict[str, Any],
    metadata: Dict[str, Any],
) -> List[ActivityItem]:
    token = _require_access_token(credentials)
    headers = {"Authorization": f"Bearer {token}"}

    items: List[ActivityItem] = []
    for channel in _account_list(metadata, credentials, "channels"):
        channel_id = channel.get("channel_id")
        if not channel_id:
            continue
        try:
            uploads = channel.get("uploads_playlist_id")
            if not uploads:
                data = await platform_request(
                    client,
                    "GET",
                    f"{YOUTUBE_API_URL}/channels",
                    Platform.YOUTUBE.value,
                    params={"part": "contentDetails", "id": channel_id},
                    headers=headers,
                )
                found = data.get("items") or [{}]
                uploads = ((found[0].get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
            if not uploads:
                continue

            data = await platform_request(
                client,
                "GET",
                f"{YOUTUBE_API_URL}/playlistItems",
                Platform.YOUTUBE.value,
                params={"part": "snippet", "playlistId": uploads, "maxResults": POSTS_PER_ACCOUNT},
                headers=headers,
            )
        except AppError as e:
            _log_account_failure(Platform.YOUTUBE, channel_id, e)
            continue

        for entry in data.get("items") or []:
            snippet = entry.get("snippet") or {}
            video_id = (snippet.get("resourceId") or {}).get("videoId") or entry.get("id", "")
            thumbnails = snippet.get("thumbnails") or {}
            thumbnail = thumbnails.get("medium") or thumbnails.get("default") or {}
            items.append(ActivityItem(
                id=video_id,
                platform=Platform.YOUTUBE,
                account_name=channel.get("channel_name") or "YouTube Channel",
                account_id=channel_id,
                content=snippet.get("title") or "",
                media_url=thumbnail.get("url"),
                permalink=f"https://www.youtube.com/watch?v={video_id}",
                published_at=_parse_datetime(snippet.get("publishedAt")),
            ))
    return items


# =============================================================================
# Twitter
# =============================================================================

def twitter_auth_headers(credentials: Dict[str, Any], method: str, url: str,
                         params: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """
    Build the Authorization header for a Twitter API call.

    OAuth 1.0a user credentials are preferred; a stored bearer token is the
    fallback.

    Raises:
        ValidationError: If neither form of credential is present
    """
    consumer_key = credential_field(credentials, "consumer_key")
    consumer_secret = credential_field(credentials, "consumer_secret")
    access_token = credential_field(credentials, "access_token")
    access_token_secret = credential_field(credentials, "access_token_secret")

    if consumer_key and consumer_secret and access_token and access_token_secret:
        return {
            "Authorization": oauth1_authorization_header(
                method,
                url,
                consumer_key=consumer_key,
                consumer_secret=consumer_secret,
                token=access_token,
                token_secret=access_token_secret,
                params=params,
            )
        }

    bearer = credential_field(credentials, "bearer_token") or access_token
    if not bearer:
        raise ValidationError("Missing Twitter OAuth credentials")
    return {"Authorization": f"Bearer {bearer}"}


async def fetch_twitter_activity(
    client: httpx.AsyncClient,
    credentials: Dict[str, Any],
    metadata: Dict[str, Any],
) -> List[ActivityItem]:
    profile = metadata.get("personal_info") or credentials.get("personal_info") or {}
    user_id = profile.get("user_id")
    if not user_id:
        return []

    url = f"{TWITTER_API_URL}/users/{user_id}/tweets"
    params = {"max_results": POSTS_PER_ACCOUNT, "tweet.fields": "created_at,public_metrics"}
    data = await platform_request(
        client,
        "GET",
        url,
        Platform.TWITTER.value,
        params=params,
        headers=twitter_auth_headers(credentials, "GET", url, params),
    )

    username = profile.get("username")
    account_name = profile.get("name") or (f"@{username}" if username else "Twitter")
    items: List[ActivityItem] = []
    for tweet in data.get("data") or []:
        metrics = tweet.get("public_metrics") or {}
        items.append(ActivityItem(
            id=tweet.get("id", ""),
            platform=Platform.TWITTER,
            account_name=account_name,
            account_id=user_id,
            content=tweet.get("text") or "",
            permalink=f"https://twitter.com/{username or 'i'}/status/{tweet.get('id', '')}",
            published_at=_parse_datetime(tweet.get("created_at")),
            engagement=Engagement(
                likes=metrics.get("like_count"),
                comments=metrics.get("reply_count"),
                shares=metrics.get("retweet_count"),
                views=metrics.get("impression_count"),
            ),
        ))
    return items


ACTIVITY_FETCHERS: Dict[Platform, ActivityFetcher] = {
    Platform.LINKEDIN: fetch_linkedin_activity,
    Platform.FACEBOOK: fetch_facebook_activity,
    Platform.INSTAGRAM: fetch_instagram_activity,
    Platform.YOUTUBE: fetch_youtube_activity,
    Platform.TWITTER: fetch_twitter_activity,
}
