"""
Credential vault API routes.

All endpoints are POST with JSON bodies and answer with the envelope
{"success", "data", "error"}. Each request passes the access gate and the
rate limiter before anything else runs.

SECURITY:
- Responses never contain credential values
- Identity-token callers can only reach their own integrations
- Encryption migration is limited to the automation API key
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from src.api.dependencies.vault import (
    build_store,
    get_http_client,
    get_legacy_decryptor,
    parse_platform,
    require_automation_caller,
    require_caller,
)
from src.api.schemas.vault import (
    DisconnectRequest,
    FacebookExchangeRequest,
    MigrateEncryptionRequest,
    OpenAIValidateRequest,
    PlatformRequest,
    StoreIntegrationRequest,
    UserScopedRequest,
)
from src.credentials.migration import MigrationSweep
from src.credentials.refresh import TokenRefresher
from src.database.session import get_db_session
from src.models.platform_integration import Platform
from src.platform.access_gate import CallerContext
from src.platform.errors import envelope
from src.services.activity_aggregator import ActivityAggregator
from src.services.platform_discovery import PlatformDiscovery, validate_openai_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vault", tags=["vault"])


def _timeout(request: Request) -> float:
    return request.app.state.settings.http_timeout_seconds


# =============================================================================
# Integrations
# =============================================================================

@router.post("/integrations")
async def store_integration(
    body: StoreIntegrationRequest,
    request: Request,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """Store (or replace) a user's credentials for one platform."""
    user_id = caller.resolve_user_id(body.user_id)
    platform = parse_platform(body.platform_name)

    store = build_store(request, db_session, user_id)
    handle = await store.store_integration(platform, body.credentials, metadata=body.metadata)

    return envelope(data={
        "integration_id": handle.id,
        "platform_name": platform.value,
        "version": handle.version,
        "message": "Credentials stored securely",
    })


@router.post("/integrations/get")
async def get_integration(
    body: PlatformRequest,
    request: Request,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """Integration summary with token expiration status. Never decrypts."""
    user_id = caller.resolve_user_id(body.user_id)
    store = build_store(request, db_session, user_id)
    return envelope(data=store.get_integration(parse_platform(body.platform_name)))


@router.post("/integrations/disconnect")
async def disconnect_integration(
    body: DisconnectRequest,
    request: Request,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    user_id = caller.resolve_user_id(body.user_id)
    platform = parse_platform(body.platform_name) if body.platform_name else None

    store = build_store(request, db_session, user_id)
    integration_id = await store.disconnect(
        platform=platform,
        integration_id=body.integration_id,
        hard_delete=body.hard_delete,
    )
    return envelope(data={
        "integration_id": integration_id,
        "hard_delete": body.hard_delete,
        "message": "Integration disconnected",
    })


# =============================================================================
# Token lifecycle
# =============================================================================

@router.post("/facebook/exchange-token")
async def exchange_facebook_token(
    body: FacebookExchangeRequest,
    request: Request,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """Exchange a short-lived Facebook token; the long-lived one is stored, not returned."""
    user_id = caller.resolve_user_id(body.user_id)
    refresher = TokenRefresher(
        build_store(request, db_session, user_id),
        http_client=get_http_client(request),
        timeout=_timeout(request),
    )
    result = await refresher.exchange_facebook_token(body.short_lived_token, metadata=body.metadata)
    return envelope(data=result.to_dict())


@router.post("/{platform_name}/refresh-token")
async def refresh_token(
    platform_name: str,
    request: Request,
    body: Optional[UserScopedRequest] = None,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """
    Refresh the platform access token.

    Returns only the new expiry; the token itself stays in the vault.
    """
    user_id = caller.resolve_user_id(body.user_id if body else None)
    platform = parse_platform(platform_name)

    refresher = TokenRefresher(
        build_store(request, db_session, user_id),
        http_client=get_http_client(request),
        timeout=_timeout(request),
    )
    result = await refresher.refresh(platform)
    return envelope(data=result.to_dict())


# =============================================================================
# Discovery and activity
# =============================================================================

@router.post("/openai/validate")
async def validate_openai(
    body: OpenAIValidateRequest,
    request: Request,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    user_id = caller.resolve_user_id(body.user_id)
    result = await validate_openai_key(
        body.key,
        http_client=get_http_client(request),
        timeout=_timeout(request),
    )

    if body.store:
        store = build_store(request, db_session, user_id)
        await store.store_integration(Platform.OPENAI, {"api_key": body.key})

    return envelope(data=result)


@router.post("/{platform_name}/discover")
async def discover_accounts(
    platform_name: str,
    request: Request,
    body: Optional[UserScopedRequest] = None,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """Sync pages, organizations, channels or profile into metadata."""
    user_id = caller.resolve_user_id(body.user_id if body else None)
    discovery = PlatformDiscovery(
        build_store(request, db_session, user_id),
        http_client=get_http_client(request),
        timeout=_timeout(request),
    )
    return envelope(data=await discovery.discover(parse_platform(platform_name)))


@router.post("/activity")
async def get_activity(
    request: Request,
    body: Optional[UserScopedRequest] = None,
    caller: CallerContext = Depends(require_caller),
    db_session: Session = Depends(get_db_session),
):
    """Recent posts across all connected platforms, newest first."""
    user_id = caller.resolve_user_id(body.user_id if body else None)
    aggregator = ActivityAggregator(
        db_session,
        legacy_decryptor=get_legacy_decryptor(request),
        http_client=get_http_client(request),
        limit=request.app.state.settings.activity_feed_limit,
        timeout=_timeout(request),
    )
    items = await aggregator.fetch(user_id)
    return envelope(data={"activities": [item.to_dict() for item in items]})


# =============================================================================
# Administration
# =============================================================================

@router.post("/admin/migrate-encryption")
async def migrate_encryption(
    request: Request,
    body: Optional[MigrateEncryptionRequest] = None,
    caller: CallerContext = Depends(require_automation_caller),
    db_session: Session = Depends(get_db_session),
):
    """Re-encrypt every plaintext and legacy-cipher integration."""
    sweep = MigrationSweep(
        db_session,
        legacy_decryptor=get_legacy_decryptor(request),
        dry_run=body.dry_run if body else False,
    )
    report = await sweep.run()
    return envelope(data=report.to_dict())
