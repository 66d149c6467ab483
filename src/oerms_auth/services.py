"""Wiring of the auth core for one application instance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx

from oerms_auth.api.client import ApiClient
from oerms_auth.config import Config
from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.callback import CallbackHandler
from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow
from oerms_auth.oauth.protocol_state import ProtocolStateStore
from oerms_auth.oauth.session import SessionManager
from oerms_auth.oauth.storage import StorageArea, create_storage
from oerms_auth.oauth.token_store import TokenStore
from oerms_auth.policy import PolicyEvaluator
from oerms_auth.security import SessionAuthStrategy

logger = get_logger(__name__)


@dataclass
class AuthServices:
    """Everything a front-end needs from the auth core."""

    config: Config
    storage: StorageArea
    token_store: TokenStore
    protocol_state: ProtocolStateStore
    oauth_flow: OAuth2AuthorizationCodeFlow
    session_manager: SessionManager
    api_client: ApiClient
    policy_evaluator: PolicyEvaluator

    def callback_handler(self) -> CallbackHandler:
        """A fresh handler for one provider redirect."""
        return CallbackHandler(
            oauth_flow=self.oauth_flow,
            token_store=self.token_store,
            protocol_state=self.protocol_state,
            session_manager=self.session_manager,
            landing_route=self.config.landing_route,
            login_route=self.config.login_route,
        )

    async def start(self) -> None:
        """Application mount: resolve the session from storage."""
        session = await self.session_manager.initialize()
        logger.info("Auth core started (authenticated=%s)", session.is_authenticated)

    async def stop(self) -> None:
        """Application unmount."""
        await self.session_manager.close()
        await self.api_client.close()
        await self.oauth_flow.close()
        logger.info("Auth core stopped")


def build_services(
    config: Config,
    storage: StorageArea | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> AuthServices:
    """Assemble the auth core from configuration.

    Args:
        config: Application configuration
        storage: Storage area override; defaults to :func:`create_storage`
        http_client: Shared HTTP client for token and API calls
    """
    storage = storage if storage is not None else create_storage(config)
    token_store = TokenStore(storage)
    oauth_flow = OAuth2AuthorizationCodeFlow.from_config(config, http_client=http_client)
    session_manager = SessionManager(
        token_store=token_store,
        oauth_flow=oauth_flow,
        refresh_buffer=timedelta(seconds=config.refresh_buffer_seconds),
    )
    api_client = ApiClient(
        config.api_base_url,
        SessionAuthStrategy(session_manager),
        http_client=http_client,
        timeout=config.http_timeout,
        on_unauthorized=session_manager.logout,
    )
    return AuthServices(
        config=config,
        storage=storage,
        token_store=token_store,
        protocol_state=ProtocolStateStore(storage),
        oauth_flow=oauth_flow,
        session_manager=session_manager,
        api_client=api_client,
        policy_evaluator=PolicyEvaluator(session_manager, api_client, config.policy_path),
    )
