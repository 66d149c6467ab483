"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import pytest

from oerms_auth.config import Config, Environment, LogLevel
from oerms_auth.logging_config import reset_logging
from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow
from oerms_auth.oauth.protocol_state import ProtocolStateStore
from oerms_auth.oauth.storage import InMemoryStorage
from oerms_auth.oauth.token_store import TokenRecord, TokenStore

AUTH_SERVER = "https://auth.example.com"
API_BASE = "https://api.example.com"
TOKEN_URL = f"{AUTH_SERVER}/oauth2/token"
REVOKE_URL = f"{AUTH_SERVER}/oauth2/revoke"
REDIRECT_URI = "http://localhost:3000/auth/callback"


@pytest.fixture(autouse=True)
def clean_logging() -> Iterator[None]:
    """Leave the package logger propagating so caplog sees records."""
    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def auth_config() -> Config:
    """Create a configuration pointing at test servers."""
    return Config(
        app_name="OERMS Auth Test",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        auth_server_url=AUTH_SERVER,
        client_id="test-client",
        redirect_uri=REDIRECT_URI,
        api_base_url=API_BASE,
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    """Create an empty storage area."""
    return InMemoryStorage()


@pytest.fixture
def token_store(storage: InMemoryStorage) -> TokenStore:
    """Create a token store over the shared storage area."""
    return TokenStore(storage)


@pytest.fixture
def protocol_state(storage: InMemoryStorage) -> ProtocolStateStore:
    """Create a protocol state store over the shared storage area."""
    return ProtocolStateStore(storage)


@pytest.fixture
def oauth_flow() -> OAuth2AuthorizationCodeFlow:
    """Create an authorization code flow against the test server."""
    return OAuth2AuthorizationCodeFlow(
        auth_server_url=AUTH_SERVER,
        client_id="test-client",
        redirect_uri=REDIRECT_URI,
        scope="openid profile email read write",
    )


@pytest.fixture
def make_access_token() -> Callable[..., str]:
    """Factory for unsigned-looking JWTs carrying OERMS claims."""

    def _make(
        user_id: str = "42",
        username: str = "alice",
        email: str = "alice@example.com",
        roles: list[str] | None = None,
        **extra: Any,
    ) -> str:
        claims: dict[str, Any] = {
            "sub": username,
            "userId": user_id,
            "username": username,
            "email": email,
            "roles": roles if roles is not None else ["ROLE_STUDENT"],
            "authorities": ["read", "write"],
        }
        claims.update(extra)
        return jwt.encode(claims, "test-signing-key-not-checked-by-client", algorithm="HS256")

    return _make


@pytest.fixture
def make_record(make_access_token: Callable[..., str]) -> Callable[..., TokenRecord]:
    """Factory for token records expiring a given number of seconds from now."""

    def _make(
        expires_in: float = 3600,
        refresh_token: str | None = "refresh-1",
        access_token: str | None = None,
        **claims: Any,
    ) -> TokenRecord:
        return TokenRecord(
            access_token=access_token or make_access_token(**claims),
            refresh_token=refresh_token,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    return _make
