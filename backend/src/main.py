"""
Credential vault application.

Startup validates configuration and the encryption key, then wires the
access gate, rate limiter and routes. Missing configuration fails here,
never per request.

Run:
    uvicorn src.main:create_app --factory --host 0.0.0.0 --port 8000
"""

import logging
from typing import Optional

import httpx
from fastapi import FastAPI

from src.api.routes import health, vault
from src.config.settings import VaultSettings
from src.credentials.encryption import configure_cipher_codec, validate_encryption_ready
from src.credentials.formats import LegacyDecryptor
from src.credentials.redaction import setup_credential_logging
from src.middleware.cors import CORSMiddleware
from src.middleware.rate_limit import RateLimiter, build_rate_limiter
from src.middleware.vault_access import VaultAccessMiddleware
from src.platform.access_gate import (
    AccessGate,
    ChainedIdentityVerifier,
    IdentityVerifier,
    JWTIdentityVerifier,
    RemoteIdentityVerifier,
)
from src.platform.errors import ErrorHandlerMiddleware, register_error_handlers

logger = logging.getLogger(__name__)


def build_identity_verifier(settings: VaultSettings) -> Optional[IdentityVerifier]:
    """Local JWT verification first, identity provider lookup second."""
    verifiers = []
    if settings.identity_jwt_secret:
        verifiers.append(JWTIdentityVerifier(
            settings.identity_jwt_secret,
            audience=settings.identity_jwt_audience,
        ))
    if settings.identity_provider_url:
        verifiers.append(RemoteIdentityVerifier(
            settings.identity_provider_url,
            api_key=settings.identity_provider_api_key,
            timeout=settings.http_timeout_seconds,
        ))
    if not verifiers:
        return None
    if len(verifiers) == 1:
        return verifiers[0]
    return ChainedIdentityVerifier(*verifiers)


def create_app(
    settings: Optional[VaultSettings] = None,
    identity_verifier: Optional[IdentityVerifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    legacy_decryptor: Optional[LegacyDecryptor] = None,
) -> FastAPI:
    """
    Build the vault application.

    Raises:
        ConfigurationError: Required configuration missing or key unusable
    """
    settings = settings or VaultSettings.from_env()

    configure_cipher_codec(settings.encryption_key)
    validate_encryption_ready()
    setup_credential_logging()

    app = FastAPI(title="Credential Vault", version="1.0.0")

    app.state.settings = settings
    app.state.access_gate = AccessGate(
        shared_secret=settings.automation_api_key,
        identity_verifier=identity_verifier or build_identity_verifier(settings),
    )
    app.state.rate_limiter = rate_limiter or build_rate_limiter(
        backend=settings.rate_limit_backend,
        limit=settings.rate_limit_max,
        window_seconds=settings.rate_limit_window_seconds,
        enabled=settings.rate_limit_enabled,
        redis_url=settings.redis_url,
    )
    app.state.http_client = http_client
    app.state.legacy_decryptor = legacy_decryptor

    # Last added runs first: CORS answers preflight before anything else,
    # and vault admission happens before any route reads the body
    app.add_middleware(VaultAccessMiddleware)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(CORSMiddleware)
    register_error_handlers(app)

    app.include_router(health.router)
    app.include_router(vault.router)

    logger.info(
        "Credential vault started",
        extra={
            "rate_limit_backend": settings.rate_limit_backend,
            "rate_limit_max": settings.rate_limit_max,
            "identity_tokens": app.state.access_gate.identity_verifier is not None,
        },
    )
    return app

