"""
Access gate for vault endpoints.

Two mutually exclusive authentication modes:

- Shared-secret mode: the x-api-key header must equal AUTOMATION_API_KEY.
  Used by trusted automation callers, which must name the target user_id
  in the request body.
- Identity-token mode: Authorization: Bearer <token> is verified against
  the identity provider; the token's subject is the only user the caller
  may act for.

A request carrying neither is rejected before any other processing.
When x-api-key is present the call is judged in shared-secret mode only.

SECURITY:
- Secrets are compared in constant time
- Token contents and the shared secret are never logged
"""

import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional, Sequence

import httpx
import jwt

from src.platform.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
AUTHORIZATION_HEADER = "authorization"


class AuthMode(str, Enum):
    SHARED_SECRET = "shared_secret"
    IDENTITY = "identity"


def validate_user_id(value: Optional[str]) -> str:
    """
    Raises:
        ValidationError: If value is missing or not a UUID
    """
    if not value:
        raise ValidationError("user_id is required")
    try:
        return str(uuid.UUID(str(value)))
    except ValueError:
        raise ValidationError("user_id must be a valid UUID") from None


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller for one request."""
    mode: AuthMode
    principal_id: Optional[str] = None

    @property
    def is_automation(self) -> bool:
        return self.mode == AuthMode.SHARED_SECRET

    def resolve_user_id(self, requested_user_id: Optional[str] = None) -> str:
        """
        Determine which user's integrations this call may touch.

        Raises:
            ValidationError: Shared-secret call without a valid user_id
            AuthenticationError: Identity call naming a different user
        """
        if self.mode == AuthMode.SHARED_SECRET:
            return validate_user_id(requested_user_id)

        if requested_user_id and str(requested_user_id) != self.principal_id:
            logger.warning(
                "Identity caller attempted to act for another user",
                extra={"principal_id": self.principal_id},
            )
            raise AuthenticationError("Not authorized to act for this user")
        return self.principal_id


# =============================================================================
# Identity verification
# =============================================================================

class IdentityVerifier(ABC):
    """Turns a bearer token into the authenticated user's id."""

    @abstractmethod
    async def verify(self, token: str) -> str:
        """
        Raises:
            AuthenticationError: If the token is invalid or expired
        """
        pass


class JWTIdentityVerifier(IdentityVerifier):
    """Verifies identity provider JWTs signed with a shared HS256 secret."""

    def __init__(
        self,
        secret: str,
        audience: Optional[str] = "authenticated",
        algorithms: Sequence[str] = ("HS256",),
    ):
        if not secret:
            raise ValueError("JWT secret is required")
        self.secret = secret
        self.audience = audience
        self.algorithms = list(algorithms)

    async def verify(self, token: str) -> str:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"require": ["sub", "exp"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired") from None
        except jwt.InvalidTokenError as e:
            logger.info("Identity token rejected", extra={"error_type": type(e).__name__})
            raise AuthenticationError("Invalid token") from None

        return payload["sub"]


class RemoteIdentityVerifier(IdentityVerifier):
    """Asks the identity provider's user endpoint who the token belongs to."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.user_url = f"{base_url.rstrip('/')}/auth/v1/user"
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout

    async def _get(self, client: httpx.AsyncClient, token: str) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        return await client.get(self.user_url, headers=headers)

    async def verify(self, token: str) -> str:
        try:
            if self.http_client is not None:
                response = await self._get(self.http_client, token)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._get(client, token)
        except httpx.HTTPError as e:
            logger.error(
                "Identity provider unreachable",
                extra={"error_type": type(e).__name__},
            )
            raise AuthenticationError("Could not verify token") from e

        if response.status_code != 200:
            raise AuthenticationError("Invalid token")

        try:
            user_id = response.json().get("id")
        except ValueError:
            user_id = None
        if not user_id:
            raise AuthenticationError("Invalid token")
        return user_id


class ChainedIdentityVerifier(IdentityVerifier):
    """Tries local JWT verification first, then the identity provider."""

    def __init__(self, *verifiers: IdentityVerifier):
        self.verifiers = verifiers

    async def verify(self, token: str) -> str:
        last_error: Optional[AuthenticationError] = None
        for verifier in self.verifiers:
            try:
                return await verifier.verify(token)
            except AuthenticationError as e:
                last_error = e
        raise last_error or AuthenticationError("Invalid token")


# =============================================================================
# Gate
# =============================================================================

def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessGate:
    """
    Authenticates inbound calls.

    Usage:
        gate = AccessGate(shared_secret=settings.automation_api_key,
                          identity_verifier=JWTIdentityVerifier(secret))
        caller = await gate.authenticate(request.headers)
        user_id = caller.resolve_user_id(body.user_id)
    """

    def __init__(
        self,
        shared_secret: str,
        identity_verifier: Optional[IdentityVerifier] = None,
    ):
        if not shared_secret:
            raise ValueError("shared_secret is required")
        self._shared_secret = shared_secret.encode("utf-8")
        self.identity_verifier = identity_verifier

    def _check_shared_secret(self, api_key: str) -> bool:
        return hmac.compare_digest(api_key.encode("utf-8"), self._shared_secret)

    async def authenticate(self, headers: Mapping[str, str]) -> CallerContext:
        """
        Authenticate a request from its headers.

        Raises:
            AuthenticationError: Missing, invalid or unverifiable credentials
        """
        api_key = headers.get(API_KEY_HEADER)
        if api_key is not None:
            if not self._check_shared_secret(api_key):
                logger.warning("Invalid shared secret presented")
                raise AuthenticationError("Invalid API key")
            return CallerContext(mode=AuthMode.SHARED_SECRET)

        token = _bearer_token(headers.get(AUTHORIZATION_HEADER))
        if token:
            if self.identity_verifier is None:
                raise AuthenticationError("Identity tokens are not accepted")
            principal_id = await self.identity_verifier.verify(token)
            return CallerContext(mode=AuthMode.IDENTITY, principal_id=principal_id)

        raise AuthenticationError("Missing authentication")
