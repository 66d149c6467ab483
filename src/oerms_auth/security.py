"""Security helpers shared by the auth core.

Secret redaction for logs, constant-time comparison for the CSRF state
check, random token generation, and the strategies that decide which
``Authorization`` header a backend request carries.
"""

from __future__ import annotations

import hmac
import secrets
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from oerms_auth.oauth.session import SessionManager

# Keys whose values are masked by mask_sensitive_data
SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "id_token",
    "code",
    "code_verifier",
    "state",
    "token",
    "secret",
    "password",
    "authorization",
    "encryption_key",
})


class OAuthError(Exception):
    """Raised when an OAuth operation fails."""


def redact(value: str | None) -> str:
    """Redact a potentially sensitive value for safe logging.

    Args:
        value: The value to redact

    Returns:
        "***" if value is non-empty, "<empty>" if empty/None
    """
    if value is None or value == "":
        return "<empty>"
    return "***"


def fingerprint(value: str | None, length: int = 8) -> str:
    """Return a short, log-safe prefix of an opaque token.

    Enough to correlate log lines for one login attempt without
    exposing a usable secret.
    """
    if not value:
        return "<empty>"
    return f"{value[:length]}..."


def constant_time_equals(a: str | None, b: str | None) -> bool:
    """Compare two strings in constant time.

    A missing value on either side never matches, so an absent stored
    state cannot be satisfied by an absent returned state.
    """
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a URL-safe token from ``nbytes`` of CSPRNG output."""
    return secrets.token_urlsafe(nbytes)


def mask_sensitive_data(
    data: dict[str, Any], sensitive_keys: frozenset[str] | set[str] | None = None
) -> dict[str, Any]:
    """Return a copy of ``data`` with secret-looking values replaced by ``***``.

    Nested dictionaries are masked recursively. Used before logging token
    endpoint payloads and error bodies.
    """
    keys = SENSITIVE_KEYS if sensitive_keys is None else sensitive_keys

    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = mask_sensitive_data(value, keys)
        elif key.lower() in keys or any(k in key.lower() for k in ("token", "secret")):
            result[key] = "***"
        else:
            result[key] = value
    return result


class AuthStrategy(ABC):
    """Supplies authorization headers for backend requests."""

    @abstractmethod
    async def get_auth_headers(self) -> dict[str, str]:
        """Get authorization headers for an API request.

        Returns:
            Dictionary of headers to include in the request
        """


class NoAuthStrategy(AuthStrategy):
    """Sends requests without credentials."""

    async def get_auth_headers(self) -> dict[str, str]:
        return {}


class SessionAuthStrategy(AuthStrategy):
    """Attaches the signed-in user's bearer token when there is one.

    Delegates to :class:`SessionManager`, which refreshes a token that
    is about to expire before handing it out.
    """

    def __init__(self, session_manager: SessionManager) -> None:
        self._session_manager = session_manager

    async def get_auth_headers(self) -> dict[str, str]:
        return await self._session_manager.get_auth_headers()
