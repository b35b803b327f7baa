"""Configuration module for the credential vault."""

from src.config.oauth_clients import OAuthClient, get_oauth_client
from src.config.settings import VaultSettings

__all__ = [
    "OAuthClient",
    "VaultSettings",
    "get_oauth_client",
]
