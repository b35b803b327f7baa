"""
Shared HTTP plumbing for social platform APIs.

Every outbound platform call goes through platform_request(), which maps
transport failures to UpstreamUnavailableError (500) and platform-reported
errors to UpstreamError (400) carrying the platform's own message.

SECURITY:
- Request parameters (which carry tokens) are never logged
- Upstream error messages are redacted before they reach clients
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from src.credentials.redaction import redact_credential_value
from src.platform.errors import UpstreamError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0


@asynccontextmanager
async def platform_client(
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=timeout) as owned:
        yield owned


def upstream_error_message(data: Any) -> Optional[str]:
    """
    Extract an error message from a platform response body.

    Handles the OAuth shape {"error", "error_description"}, the Graph API
    shape {"error": {"message"}} and the Twitter v2 shape {"errors": [...]}.
    """
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("type") or "Unknown platform error"
    if error:
        return data.get("error_description") or str(error)
    errors = data.get("errors")
    if isinstance(errors, list) and errors and "data" not in data:
        first = errors[0]
        if isinstance(first, dict):
            return first.get("detail") or first.get("message") or "Unknown platform error"
    return None


def parse_platform_response(response: httpx.Response, platform: str) -> dict:
    """
    Decode a platform JSON response or raise the matching error.

    Raises:
        UpstreamError: The platform rejected the call (4xx or error body)
        UpstreamUnavailableError: The platform failed (5xx)
    """
    try:
        data = response.json()
    except ValueError:
        data = {}

    message = upstream_error_message(data)
    if response.status_code >= 500:
        logger.warning(
            "Platform server error",
            extra={"platform": platform, "status_code": response.status_code},
        )
        raise UpstreamUnavailableError(
            f"{platform} is unavailable (HTTP {response.status_code})", platform=platform
        )
    if message or response.is_error:
        logger.warning(
            "Platform rejected request",
            extra={"platform": platform, "status_code": response.status_code},
        )
        raise UpstreamError(
            redact_credential_value(message) if message
            else f"{platform} request failed (HTTP {response.status_code})",
            platform=platform,
        )
    return data if isinstance(data, dict) else {"data": data}


async def platform_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    platform: str,
    **kwargs: Any,
) -> dict:
    """
    Perform a platform API call and return the decoded JSON body.

    Raises:
        UpstreamError: The platform rejected the call
        UpstreamUnavailableError: Transport failure or platform 5xx
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        logger.warning(
            "Platform request failed",
            extra={"platform": platform, "error_type": type(e).__name__},
        )
        raise UpstreamUnavailableError(f"Could not reach {platform}", platform=platform) from e
    return parse_platform_response(response, platform)
