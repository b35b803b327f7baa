"""
Admission for vault endpoints.

Runs the access gate and then the rate limiter before the route is
resolved, so the request body is never read for a caller that failed
authentication. The authenticated CallerContext is left on
request.state.caller for the route dependencies.
"""

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from src.middleware.rate_limit import enforce_rate_limit
from src.platform.access_gate import CallerContext
from src.platform.errors import AppError, render_app_error

logger = logging.getLogger(__name__)

VAULT_PATH_PREFIX = "/api/vault"
RATE_LIMIT_SCOPE = "vault"


async def admit_vault_request(request: Request) -> CallerContext:
    """
    Raises:
        AuthenticationError: Missing or invalid credentials (401)
        RateLimitError: Caller exceeded its window (429)
    """
    caller = await request.app.state.access_gate.authenticate(request.headers)
    enforce_rate_limit(request, request.app.state.rate_limiter, scope=RATE_LIMIT_SCOPE)
    request.state.caller = caller
    return caller


class VaultAccessMiddleware(BaseHTTPMiddleware):
    """Authenticates and rate limits everything under VAULT_PATH_PREFIX except preflight."""

    def __init__(self, app, path_prefix: str = VAULT_PATH_PREFIX):
        super().__init__(app)
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        try:
            await admit_vault_request(request)
        except AppError as e:
            return render_app_error(request, e)

        return await call_next(request)
