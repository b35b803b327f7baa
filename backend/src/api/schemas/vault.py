"""
Request bodies for the credential vault API.

user_id is optional everywhere: identity-token callers act for the token's
subject, shared-secret callers must name the user explicitly. The access
gate enforces which of the two applies.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class UserScopedRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, description="Target user (UUID)")


class StoreIntegrationRequest(UserScopedRequest):
    platform_name: str
    credentials: Dict[str, Any]
    metadata: Optional[Dict[str, Any]] = None


class PlatformRequest(UserScopedRequest):
    platform_name: str


class DisconnectRequest(UserScopedRequest):
    platform_name: Optional[str] = None
    integration_id: Optional[str] = None
    hard_delete: bool = False


class FacebookExchangeRequest(UserScopedRequest):
    short_lived_token: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class OpenAIValidateRequest(UserScopedRequest):
    api_key: Optional[str] = None
    # Older automation callers send the key as openai_key
    openai_key: Optional[str] = None
    store: bool = Field(default=False, description="Store the key as the user's openai integration")

    @property
    def key(self) -> Optional[str]:
        return self.api_key or self.openai_key


class MigrateEncryptionRequest(BaseModel):
    dry_run: bool = False
