"""Starlette companion app exposing the login entry points.

``/login`` starts the flow, ``/auth/callback`` completes it, ``/logout``
ends the session and ``/session`` reports it. The session manager is
initialized on startup and closed on shutdown.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from starlette.applications import Starlette
from starlette.responses import JSONResponse, RedirectResponse
from starlette.routing import Route

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.exceptions import (
    AuthFlowError,
    CsrfMismatch,
    TokenExchangeFailed,
)

if TYPE_CHECKING:
    from starlette.requests import Request

    from oerms_auth.oauth.session import Session
    from oerms_auth.services import AuthServices

logger = get_logger(__name__)


def _error_status(error: AuthFlowError) -> int:
    if isinstance(error, CsrfMismatch):
        return 403
    if isinstance(error, TokenExchangeFailed):
        return 502
    return 400


def session_to_dict(session: Session) -> dict[str, Any]:
    """JSON view of a session snapshot."""
    user = session.user
    return {
        "is_authenticated": session.is_authenticated,
        "is_loading": session.is_loading,
        "user": None
        if user is None
        else {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "roles": sorted(user.roles),
            "authorities": sorted(user.authorities),
        },
    }


def create_app(services: AuthServices) -> Starlette:
    """Create the ASGI application around an assembled auth core."""
    config = services.config

    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "environment": config.environment.value,
        })

    async def login(request: Request) -> RedirectResponse:
        url = await services.oauth_flow.begin_login(services.protocol_state)
        return RedirectResponse(url=url, status_code=302)

    async def oauth_callback(request: Request) -> JSONResponse | RedirectResponse:
        handler = services.callback_handler()
        try:
            result = await handler.handle_callback(request.query_params)
        except AuthFlowError as e:
            return JSONResponse(e.to_dict(), status_code=_error_status(e))
        return RedirectResponse(url=result.redirect_to, status_code=303)

    async def logout(request: Request) -> JSONResponse:
        await services.session_manager.logout()
        return JSONResponse({
            "status": "logged_out",
            "redirect_to": f"{config.login_route}?logged_out=true",
        })

    async def session(request: Request) -> JSONResponse:
        await services.session_manager.initialize()
        return JSONResponse(session_to_dict(services.session_manager.session))

    async def policy_check(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "invalid_request"}, status_code=400)

        action = body.get("action") if isinstance(body, dict) else None
        resource = body.get("resource") if isinstance(body, dict) else None
        if not isinstance(action, str) or not isinstance(resource, str):
            return JSONResponse({"error": "action and resource are required"}, status_code=400)

        context = body.get("context")
        decision = await services.policy_evaluator.evaluate(
            action, resource, context if isinstance(context, dict) else None
        )
        return JSONResponse({"allowed": decision.allowed, "error": decision.error})

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await services.start()
        try:
            yield
        finally:
            await services.stop()

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/login", login, methods=["GET"]),
        Route("/auth/callback", oauth_callback, methods=["GET"]),
        Route("/logout", logout, methods=["POST"]),
        Route("/session", session, methods=["GET"]),
        Route("/policy/check", policy_check, methods=["POST"]),
    ]

    return Starlette(routes=routes, lifespan=lifespan)


async def run_app(app: Starlette, host: str, port: int) -> None:
    """Serve ``app`` with uvicorn."""
    import uvicorn

    logger.info("Serving auth endpoints on %s:%d", host, port)
    server = uvicorn.Server(uvicorn.Config(app=app, host=host, port=port, log_level="info"))
    await server.serve()
