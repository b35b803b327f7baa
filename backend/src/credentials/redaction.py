"""
Keeping platform secrets out of logs, and the credential audit trail.

Log lines may carry: integration id, platform name, credential key names,
expiry timestamps. They may never carry: access/refresh tokens, page tokens,
token secrets or API keys.

Every vault mutation emits one audit record on the "credentials.audit"
logger (see AuditEventType for the event names).
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

MAX_DEPTH = 10

AUDIT_LOGGER_NAME = "credentials.audit"


class AuditEventType(str, Enum):
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_ACCESSED = "credential.accessed"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_MIGRATED = "credential.migrated"
    CREDENTIAL_REVOKED = "credential.revoked"
    CREDENTIAL_ERROR = "credential.error"


SECRET_KEY_FRAGMENTS = (
    "token", "secret", "password", "api_key", "apikey",
    "authorization", "bearer", "private_key", "credentials",
)

# e.g. token_expires_at, page_token_count, refresh_token_rotated
SAFE_KEY_SUFFIXES = (
    "_expires_at", "_expires_in", "_id", "_format", "_path",
    "_fields", "_encrypted", "_type", "_count", "_rotated",
)

SECRET_VALUE_PATTERNS = [
    re.compile(r"(bearer\s+[A-Za-z0-9._~+/=-]+)", re.IGNORECASE),
    re.compile(r"(ya29\.[A-Za-z0-9_-]+)"),          # google
    re.compile(r"(EAA[A-Za-z0-9]{20,})"),           # facebook / instagram
    re.compile(r"(sk-[A-Za-z0-9_-]{16,})"),         # openai
    re.compile(r"(AQ[A-Za-z0-9_-]{40,})"),          # linkedin
    re.compile(r"(access_token=[^&\s]+)"),
]

# Loggers that handle decrypted credentials at some point
CREDENTIAL_LOGGERS = (
    AUDIT_LOGGER_NAME,
    "src.credentials",
    "src.credentials.store",
    "src.credentials.refresh",
    "src.credentials.migration",
    "src.services.platform_discovery",
    "src.services.activity_aggregator",
)


def is_credential_secret_key(key: str) -> bool:
    """True when a dict key / log attribute name looks like it holds a secret."""
    name = str(key).lower()
    if name.endswith(SAFE_KEY_SUFFIXES):
        return False
    for fragment in SECRET_KEY_FRAGMENTS:
        if fragment in name:
            return True
    return False


def _walk(data: Any, on_secret: Callable[[str, Any], Any], on_leaf: Callable[[Any], Any],
          path: str = "", depth: int = 0) -> Any:
    """Rebuild `data`, handing secret-keyed entries to on_secret and other leaves to on_leaf."""
    if depth > MAX_DEPTH:
        return data
    if isinstance(data, dict):
        rebuilt = {}
        for key, value in data.items():
            key_path = f"{path}{key}"
            if is_credential_secret_key(key):
                rebuilt[key] = on_secret(key_path, value)
            else:
                rebuilt[key] = _walk(value, on_secret, on_leaf, f"{key_path}.", depth + 1)
        return rebuilt
    if isinstance(data, list):
        return [_walk(item, on_secret, on_leaf, path, depth + 1) for item in data]
    return on_leaf(data)


def find_secret_keys(data: Any) -> List[str]:
    """
    Dotted paths of every secret-looking key in `data`.

    The store uses this to refuse tokens smuggled into integration metadata,
    e.g. {"pages": [{"access_token": ...}]} reports "pages.access_token".
    """
    paths: List[str] = []

    def collect(path, value):
        paths.append(path)
        return value

    _walk(data, collect, lambda leaf: leaf)
    return paths


def redact_credential_value(value: Any) -> Any:
    """Mask token-shaped substrings inside a string; non-strings pass through."""
    if not isinstance(value, str):
        return value
    for pattern in SECRET_VALUE_PATTERNS:
        value = pattern.sub(REDACTED_VALUE, value)
    return value


def redact_credential_data(data: Any) -> Any:
    """
    Copy of `data` that is safe to log.

    Secret-keyed entries are replaced wholesale (even when the value is a
    nested page-token map); other strings have token patterns masked.
    """
    return _walk(data, lambda path, value: REDACTED_VALUE, redact_credential_value)


class CredentialAuditLogger:
    """Writes structured credential.* events for one user's integrations."""

    def __init__(self, user_id: Optional[str]):
        # None for sweeps that cross users (the encryption migration)
        self.user_id = user_id
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def _record(self, event_type: AuditEventType, integration_id: str, platform: str,
                metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        record = redact_credential_data(metadata) if metadata else {}
        record.update(
            event_type=event_type.value,
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=self.user_id,
            integration_id=integration_id,
            platform=platform,
        )
        return record

    def log(
        self,
        event_type: AuditEventType,
        integration_id: str,
        platform: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Emit one event. `metadata` is redacted but should hold key names only."""
        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra=self._record(event_type, integration_id, platform, metadata),
        )

    def log_error(self, integration_id: str, platform: str, error: str) -> None:
        self.log(
            AuditEventType.CREDENTIAL_ERROR,
            integration_id,
            platform,
            metadata={"error": redact_credential_value(error)},
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Scrubs a LogRecord in place: message, %-args, and any `extra=` fields.

        logging.getLogger("src.credentials").addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)
        record.args = self._scrub_args(record.args)

        for name, value in list(vars(record).items()):
            if name in ("msg", "args"):
                continue
            if is_credential_secret_key(name):
                setattr(record, name, REDACTED_VALUE)
            elif isinstance(value, (dict, list)):
                setattr(record, name, redact_credential_data(value))
            elif isinstance(value, str):
                setattr(record, name, redact_credential_value(value))
        return True

    @staticmethod
    def _scrub_args(args):
        if isinstance(args, dict):
            return redact_credential_data(args)
        if isinstance(args, tuple):
            return tuple(redact_credential_value(arg) for arg in args)
        return args


def setup_credential_logging() -> None:
    """Attach one CredentialLoggingFilter to each credential logger (idempotent)."""
    shared = CredentialLoggingFilter()
    for name in CREDENTIAL_LOGGERS:
        target = logging.getLogger(name)
        if any(isinstance(f, CredentialLoggingFilter) for f in target.filters):
            continue
        target.addFilter(shared)

    logger.info("Credential redaction filter installed", extra={"loggers": len(CREDENTIAL_LOGGERS)})
