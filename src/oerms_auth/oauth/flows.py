"""OAuth 2.0 Authorization Code flow with PKCE.

Builds the authorization redirect and talks to the authorization
server's token and revocation endpoints.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.exceptions import RefreshFailed, TokenExchangeFailed
from oerms_auth.oauth.pkce import CODE_CHALLENGE_METHOD, create_pkce_pair, generate_state
from oerms_auth.oauth.token_store import TokenRecord, TokenRecordError
from oerms_auth.security import fingerprint

if TYPE_CHECKING:
    from oerms_auth.config import Config
    from oerms_auth.oauth.protocol_state import ProtocolStateStore

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0

AUTHORIZE_PATH = "/oauth2/authorize"
TOKEN_PATH = "/oauth2/token"
REVOKE_PATH = "/oauth2/revoke"


def build_authorization_url(
    auth_server_base: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    state: str,
) -> str:
    """Build the identity provider redirect URL.

    Raises:
        ValueError: If any argument is empty or not a string
    """
    arguments = {
        "auth_server_base": auth_server_base,
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "code_challenge": code_challenge,
        "state": state,
    }
    missing = [name for name, value in arguments.items() if not isinstance(value, str) or not value]
    if missing:
        msg = f"Authorization URL requires non-empty values for: {', '.join(missing)}"
        raise ValueError(msg)

    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "code_challenge": code_challenge,
        "code_challenge_method": CODE_CHALLENGE_METHOD,
        "state": state,
    }
    return f"{auth_server_base.rstrip('/')}{AUTHORIZE_PATH}?{urlencode(params)}"


def _error_detail(response: httpx.Response) -> str:
    """Pull ``error_description``/``error`` from an OAuth error body."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or "Unknown error"
    if isinstance(body, dict):
        detail = body.get("error_description") or body.get("error")
        if detail:
            return str(detail)
    return response.reason_phrase or "Unknown error"


class OAuth2AuthorizationCodeFlow:
    """Client side of the authorization code flow for a public client."""

    def __init__(
        self,
        auth_server_url: str,
        client_id: str,
        redirect_uri: str,
        scope: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the flow.

        Args:
            auth_server_url: Authorization server base URL
            client_id: OAuth client identifier
            redirect_uri: Registered callback URI
            scope: Space-separated scopes
            http_client: Optional client, e.g. one backed by a mock transport
            timeout: Bound on every token endpoint call, in seconds
        """
        self.auth_server_url = auth_server_url.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_config(
        cls, config: Config, http_client: httpx.AsyncClient | None = None
    ) -> OAuth2AuthorizationCodeFlow:
        return cls(
            auth_server_url=config.auth_server_url,
            client_id=config.client_id,
            redirect_uri=config.redirect_uri,
            scope=config.scope,
            http_client=http_client,
            timeout=config.http_timeout,
        )

    @property
    def token_url(self) -> str:
        return f"{self.auth_server_url}{TOKEN_PATH}"

    @property
    def revoke_url(self) -> str:
        return f"{self.auth_server_url}{REVOKE_PATH}"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def begin_login(self, protocol_state: ProtocolStateStore) -> str:
        """Start a login attempt.

        Generates PKCE material and a CSRF state, records them, and
        returns the URL to redirect the browser to.
        """
        pkce = create_pkce_pair()
        state = generate_state()
        await protocol_state.save(state, pkce.code_verifier)

        url = build_authorization_url(
            self.auth_server_url,
            self.client_id,
            self.redirect_uri,
            self.scope,
            pkce.code_challenge,
            state,
        )
        logger.info("Starting login for client %s (state %s)", self.client_id, fingerprint(state))
        return url

    async def _post_token_request(self, data: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            self.token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    async def exchange_code_for_tokens(self, code: str, code_verifier: str) -> TokenRecord:
        """Exchange an authorization code and verifier for tokens.

        Raises:
            TokenExchangeFailed: On network failure, timeout, non-2xx status
                or an unusable response body
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": code_verifier,
        }

        logger.debug("Exchanging authorization code for tokens")

        try:
            response = await self._post_token_request(data)
        except httpx.TimeoutException as e:
            logger.error("Token exchange timed out after %.1fs", self.timeout)
            raise TokenExchangeFailed("Token exchange timed out", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.error("Token exchange error: %s", e)
            raise TokenExchangeFailed("Token exchange request failed", detail=str(e)) from e

        if response.is_error:
            detail = _error_detail(response)
            logger.error("Token exchange failed: %s - %s", response.status_code, detail)
            raise TokenExchangeFailed(
                f"Token exchange failed with status {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            tokens = TokenRecord.from_token_response(response.json())
        except (ValueError, AttributeError, TokenRecordError) as e:
            logger.error("Token exchange returned an unusable body: %s", e)
            raise TokenExchangeFailed("Token exchange returned an invalid response", detail=str(e)) from e

        logger.info("Exchanged authorization code for tokens")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> TokenRecord:
        """Use a refresh token to obtain a new record.

        The previous refresh token is kept when the server does not rotate it.

        Raises:
            RefreshFailed: On network failure, timeout, non-2xx status or an
                unusable response body
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }

        logger.debug("Refreshing access token")

        try:
            response = await self._post_token_request(data)
        except httpx.TimeoutException as e:
            logger.error("Token refresh timed out after %.1fs", self.timeout)
            raise RefreshFailed("Token refresh timed out", detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.error("Token refresh error: %s", e)
            raise RefreshFailed("Token refresh request failed", detail=str(e)) from e

        if response.is_error:
            detail = _error_detail(response)
            logger.error("Token refresh failed: %s - %s", response.status_code, detail)
            raise RefreshFailed(
                f"Token refresh failed with status {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            body: Any = response.json()
            tokens = TokenRecord.from_token_response(body, previous_refresh_token=refresh_token)
        except (ValueError, AttributeError, TokenRecordError) as e:
            raise RefreshFailed("Token refresh returned an invalid response", detail=str(e)) from e

        logger.info("Refreshed access token")
        return tokens

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> bool:
        """Best-effort token revocation.

        Returns:
            True if the server accepted the revocation. Failures are logged
            and never raised, so logout always completes.
        """
        data = {
            "token": token,
            "token_type_hint": token_type_hint,
            "client_id": self.client_id,
        }
        try:
            client = await self._get_client()
            response = await client.post(self.revoke_url, data=data, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("Token revocation failed: %s", e)
            return False

        if response.is_error:
            logger.warning("Token revocation returned %s", response.status_code)
            return False
        return True
