"""OAuth 2.0 Authorization Code flow with PKCE.

Phase one (``OAuth2AuthorizationCodeFlow.begin_login``) records the
protocol state and returns the redirect URL; phase two
(``CallbackHandler.handle_callback``) consumes that state and produces
tokens for the session manager.
"""

from oerms_auth.oauth.callback import CallbackHandler, CallbackResult
from oerms_auth.oauth.exceptions import (
    AuthFlowError,
    CsrfMismatch,
    InvalidCallback,
    MissingVerifier,
    PolicyEvaluationFailed,
    ProviderError,
    RefreshFailed,
    TokenExchangeFailed,
)
from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow, build_authorization_url
from oerms_auth.oauth.pkce import PKCEPair, create_pkce_pair, generate_code_challenge
from oerms_auth.oauth.protocol_state import ProtocolState, ProtocolStateStore
from oerms_auth.oauth.session import Session, SessionManager, UserRecord
from oerms_auth.oauth.storage import EncryptedFileStorage, InMemoryStorage, StorageArea
from oerms_auth.oauth.token_store import TokenRecord, TokenStore

__all__ = [
    "AuthFlowError",
    "CallbackHandler",
    "CallbackResult",
    "CsrfMismatch",
    "EncryptedFileStorage",
    "InMemoryStorage",
    "InvalidCallback",
    "MissingVerifier",
    "OAuth2AuthorizationCodeFlow",
    "PKCEPair",
    "PolicyEvaluationFailed",
    "ProtocolState",
    "ProtocolStateStore",
    "ProviderError",
    "RefreshFailed",
    "Session",
    "SessionManager",
    "StorageArea",
    "TokenExchangeFailed",
    "TokenRecord",
    "TokenStore",
    "UserRecord",
    "build_authorization_url",
    "create_pkce_pair",
    "generate_code_challenge",
]
