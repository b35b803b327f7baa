"""
Activity aggregation across a user's connected platforms.

Read-only fan-out: every active integration is decrypted and handed to
its platform fetcher; all fetches run concurrently and are allowed to
settle before the results are merged, newest first.

Failure isolation:
- A platform whose credentials cannot be decrypted is skipped
- A platform whose fetch raises is skipped; the others still return
- Platforms without a fetcher (e.g. openai) are ignored

Usage:
    aggregator = ActivityAggregator(db_session)
    items = await aggregator.fetch(user_id)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.credentials.formats import LegacyDecryptor
from src.credentials.store import CredentialStore
from src.integrations.social.http import DEFAULT_TIMEOUT_SECONDS, platform_client
from src.models.platform_integration import Platform
from src.platform.errors import AppError
from src.services.platform_activity import ACTIVITY_FETCHERS, ActivityFetcher, ActivityItem

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 10


class ActivityAggregator:
    """Merges recent posts from every active integration of one user."""

    def __init__(
        self,
        db_session,
        legacy_decryptor: Optional[LegacyDecryptor] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        fetchers: Optional[Dict[Platform, ActivityFetcher]] = None,
        limit: int = DEFAULT_ACTIVITY_LIMIT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.db = db_session
        self.legacy_decryptor = legacy_decryptor
        self.http_client = http_client
        self.fetchers = fetchers if fetchers is not None else ACTIVITY_FETCHERS
        self.limit = limit
        self.timeout = timeout

    async def _collect_sources(
        self,
        store: CredentialStore,
    ) -> List[Tuple[Platform, Dict[str, Any], Dict[str, Any]]]:
        sources = []
        for integration in store.list_active():
            platform = integration.platform_name
            if platform not in self.fetchers:
                continue
            try:
                credentials, handle = await store.resolve(integration)
            except AppError as e:
                logger.warning(
                    "Skipping platform with unreadable credentials",
                    extra={"platform": platform.value, "error_code": e.code},
                )
                continue
            if not credentials:
                continue
            sources.append((platform, credentials, handle.metadata))
        return sources

    async def fetch(self, user_id: str) -> List[ActivityItem]:
        """
        Fetch, merge and truncate the user's recent activity.

        Returns:
            At most ``limit`` items sorted by published time, newest first
        """
        store = CredentialStore(self.db, user_id, legacy_decryptor=self.legacy_decryptor)
        sources = await self._collect_sources(store)
        if not sources:
            return []

        async with platform_client(self.http_client, self.timeout) as client:
            results = await asyncio.gather(
                *(
                    self.fetchers[platform](client, credentials, metadata)
                    for platform, credentials, metadata in sources
                ),
                return_exceptions=True,
            )

        items: List[ActivityItem] = []
        failed = []
        for (platform, _, _), result in zip(sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failed.append(platform.value)
                logger.warning(
                    "Activity fetch failed for platform",
                    extra={
                        "platform": platform.value,
                        "error_type": type(result).__name__,
                        "error_code": getattr(result, "code", None),
                    },
                )
                continue
            items.extend(result)

        items.sort(key=lambda item: item.published_at, reverse=True)

        logger.info(
            "Activity feed aggregated",
            extra={
                "user_id": user_id,
                "platforms": [platform.value for platform, _, _ in sources],
                "failed_platforms": failed,
                "item_count": len(items),
            },
        )
        return items[:self.limit]
