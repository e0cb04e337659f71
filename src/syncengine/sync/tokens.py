"""OAuth token usability checks for connections. Refresh itself is a collaborator."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from syncengine.config import get_settings
from syncengine.models.integration import IntegrationConnection

# Performs the actual refresh for a connection; returns True on success.
TokenRefresher = Callable[[IntegrationConnection], Awaitable[bool]]


@dataclass(frozen=True)
class TokenStatus:
    valid: bool
    expired: bool
    requires_reauth: bool
    message: str


def is_token_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True if the token expires within the configured buffer. No expiry → never."""
    if expires_at is None:
        return False
    now = now or datetime.utcnow()
    buffer = timedelta(seconds=get_settings().token_expiry_buffer_seconds)
    return expires_at <= now + buffer


def check_token_status(
    connection: IntegrationConnection, now: Optional[datetime] = None
) -> TokenStatus:
    if not connection.access_token:
        return TokenStatus(
            valid=True,
            expired=False,
            requires_reauth=False,
            message="No OAuth tokens configured (using API key or other auth)",
        )

    if is_token_expired(connection.token_expires_at, now):
        if connection.refresh_token:
            return TokenStatus(
                valid=False,
                expired=True,
                requires_reauth=False,
                message="Token expired, refresh available",
            )
        return TokenStatus(
            valid=False,
            expired=True,
            requires_reauth=True,
            message="Token expired, re-authentication required",
        )

    return TokenStatus(valid=True, expired=False, requires_reauth=False, message="Token valid")
