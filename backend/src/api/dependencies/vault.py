"""
FastAPI dependencies for vault routes.

VaultAccessMiddleware admits the request (access gate, then rate limiter)
before the body is parsed; require_caller hands its CallerContext to the
route. Collaborators configured at startup (gate, limiter, optional shared
HTTP client) live on app.state.
"""

import logging
from typing import Optional

import httpx
from fastapi import Depends, Request

from src.credentials.formats import LegacyDecryptor
from src.credentials.store import CredentialStore
from src.middleware.vault_access import admit_vault_request
from src.models.platform_integration import Platform
from src.platform.access_gate import CallerContext
from src.platform.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)


async def require_caller(request: Request) -> CallerContext:
    """
    Caller admitted by VaultAccessMiddleware.

    Routers mounted without the middleware admit the request here instead.

    Raises:
        AuthenticationError: Missing or invalid credentials (401)
        RateLimitError: Caller exceeded its window (429)
    """
    caller = getattr(request.state, "caller", None)
    if caller is None:
        caller = await admit_vault_request(request)
    return caller


async def require_automation_caller(
    caller: CallerContext = Depends(require_caller),
) -> CallerContext:
    """Allow only shared-secret (automation) callers."""
    if not caller.is_automation:
        logger.warning(
            "Identity caller attempted an automation-only operation",
            extra={"principal_id": caller.principal_id},
        )
        raise AuthenticationError("This operation requires the automation API key")
    return caller


def parse_platform(value: Optional[str]) -> Platform:
    """
    Raises:
        ValidationError: If the platform name is missing or unsupported
    """
    if not value:
        raise ValidationError("platform_name is required")
    try:
        return Platform.parse(value)
    except ValueError as e:
        raise ValidationError(str(e)) from None


def get_http_client(request: Request) -> Optional[httpx.AsyncClient]:
    """Shared outbound client, if one was configured at startup."""
    return getattr(request.app.state, "http_client", None)


def get_legacy_decryptor(request: Request) -> Optional[LegacyDecryptor]:
    return getattr(request.app.state, "legacy_decryptor", None)


def build_store(request: Request, db_session, user_id: str) -> CredentialStore:
    return CredentialStore(db_session, user_id, legacy_decryptor=get_legacy_decryptor(request))
