"""
OAuth 1.0a request signing (HMAC-SHA1) for the Twitter API.

The signature base string covers the HTTP method, the URL without its
query string, and every oauth_* and query parameter, each percent-encoded
per RFC 5849 and sorted.
"""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urlsplit, urlunsplit


def percent_encode(value: Any) -> str:
    return quote(str(value), safe="-._~")


def generate_nonce() -> str:
    return secrets.token_hex(16)


def _base_url(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def signature_base_string(method: str, url: str, params: Dict[str, Any]) -> str:
    encoded = sorted((percent_encode(k), percent_encode(v)) for k, v in params.items())
    param_string = "&".join(f"{k}={v}" for k, v in encoded)
    return "&".join([
        method.upper(),
        percent_encode(_base_url(url)),
        percent_encode(param_string),
    ])


def sign(base_string: str, consumer_secret: str, token_secret: str) -> str:
    key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def oauth1_authorization_header(
    method: str,
    url: str,
    consumer_key: str,
    consumer_secret: str,
    token: str,
    token_secret: str,
    params: Optional[Dict[str, Any]] = None,
    nonce: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> str:
    """
    Build an ``Authorization: OAuth ...`` header value.

    Args:
        params: Query parameters sent with the request; they are part of
            the signature but not of the header
    """
    oauth_params = {
        "oauth_consumer_key": consumer_key,
        "oauth_nonce": nonce or generate_nonce(),
        "oauth_signature_method": "HMAC-SHA1",
        "oauth_timestamp": str(timestamp if timestamp is not None else int(time.time())),
        "oauth_token": token,
        "oauth_version": "1.0",
    }
    base_string = signature_base_string(method, url, {**(params or {}), **oauth_params})
    oauth_params["oauth_signature"] = sign(base_string, consumer_secret, token_secret)

    header_params = ", ".join(
        f'{percent_encode(k)}="{percent_encode(v)}"' for k, v in sorted(oauth_params.items())
    )
    return f"OAuth {header_params}"
