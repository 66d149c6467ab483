"""Completion of the authorization code flow.

The identity provider redirects back with ``code`` and ``state`` (or
``error``). The handler checks the request against the protocol state
recorded before the redirect, exchanges the code exactly once, stores
the tokens and lets the session manager re-derive the session. The
protocol state is removed on every path.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.exceptions import (
    DEFAULT_RETRY_URL,
    AuthFlowError,
    CsrfMismatch,
    InvalidCallback,
    MissingVerifier,
    ProviderError,
    TokenExchangeFailed,
)
from oerms_auth.security import constant_time_equals, fingerprint

if TYPE_CHECKING:
    from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow
    from oerms_auth.oauth.protocol_state import ProtocolStateStore
    from oerms_auth.oauth.session import Session, SessionManager
    from oerms_auth.oauth.token_store import TokenRecord, TokenStore

logger = get_logger(__name__)

DEFAULT_LANDING_ROUTE = "/dashboard"


@dataclass(frozen=True)
class CallbackResult:
    """Outcome of a successful callback."""

    redirect_to: str
    tokens: TokenRecord
    session: Session | None = None


class CallbackHandler:
    """Phase two of the login: turns a provider redirect into a session."""

    def __init__(
        self,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        token_store: TokenStore,
        protocol_state: ProtocolStateStore,
        session_manager: SessionManager | None = None,
        landing_route: str = DEFAULT_LANDING_ROUTE,
        login_route: str = DEFAULT_RETRY_URL,
    ) -> None:
        self._oauth_flow = oauth_flow
        self._token_store = token_store
        self._protocol_state = protocol_state
        self._session_manager = session_manager
        self._landing_route = landing_route
        self._login_route = login_route
        self._abandoned = False

    async def handle_callback(self, query: Mapping[str, str]) -> CallbackResult:
        """Complete the login from the callback query parameters.

        Raises:
            ProviderError: The provider returned ``error``
            InvalidCallback: ``code`` or ``state`` is missing
            CsrfMismatch: ``state`` does not match the stored value
            MissingVerifier: The PKCE verifier is gone
            TokenExchangeFailed: The token endpoint rejected the code, or its
                access token does not describe a user
        """
        try:
            return await self._complete(query)
        except AuthFlowError as e:
            e.retry_url = self._login_route
            logger.warning("Login callback failed (%s): %s", e.code, e)
            raise
        finally:
            await self._protocol_state.clear()

    async def _complete(self, query: Mapping[str, str]) -> CallbackResult:
        error = query.get("error")
        if error:
            raise ProviderError(error, query.get("error_description"))

        code = query.get("code")
        state = query.get("state")
        if not code or not state:
            raise InvalidCallback("Callback is missing the code or state parameter")

        stored = await self._protocol_state.load()
        stored_state = stored.state if stored is not None else None

        # Hard gate: nothing below runs unless the state round-tripped intact
        if not constant_time_equals(state, stored_state):
            logger.warning(
                "State mismatch on callback (returned %s, stored %s)",
                fingerprint(state),
                fingerprint(stored_state),
            )
            raise CsrfMismatch("Returned state does not match the stored state")

        verifier = stored.code_verifier if stored is not None else None
        if not verifier:
            raise MissingVerifier("PKCE verifier not found in storage")

        tokens = await self._oauth_flow.exchange_code_for_tokens(code, verifier)

        if self._abandoned:
            raise AuthFlowError("Login attempt was abandoned before it completed")

        await self._token_store.save(tokens)

        session = None
        if self._session_manager is not None:
            session = await self._session_manager.sync()
            if not session.is_authenticated:
                raise TokenExchangeFailed(
                    "Token endpoint returned an access token that yields no session"
                )

        logger.info("Login completed (state %s)", fingerprint(state))
        return CallbackResult(redirect_to=self._landing_route, tokens=tokens, session=session)

    async def abandon(self) -> None:
        """Give up on the pending login.

        Drops the protocol state; an exchange still in flight finishes
        without storing its tokens.
        """
        self._abandoned = True
        await self._protocol_state.clear()
