"""OERMS backend API client.

Thin async wrapper over ``httpx`` that attaches the session's bearer
token to every request and maps error responses to exceptions.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from oerms_auth.logging_config import get_logger
from oerms_auth.security import AuthStrategy, mask_sensitive_data

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0

UnauthorizedHook = Callable[[], Awaitable[None]]


class ApiError(Exception):
    """Base exception for backend API errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if applicable)
        response_body: Raw response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict[str, Any] | str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class ApiAuthenticationError(ApiError):
    """Raised when the backend rejects the bearer token (401)."""


class ApiClient:
    """Async client for the OERMS REST backend.

    Example:
        ```python
        client = ApiClient(config.api_base_url, SessionAuthStrategy(manager))
        result = await client.post("/api/policy/evaluate", {"action": "grade"})
        ```
    """

    def __init__(
        self,
        base_url: str,
        auth_strategy: AuthStrategy,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        on_unauthorized: UnauthorizedHook | None = None,
    ) -> None:
        """Initialize the API client.

        Args:
            base_url: Backend base URL
            auth_strategy: Supplies the Authorization header per request
            http_client: Optional pre-built client (tests, shared pools)
            timeout: Per-request timeout in seconds
            on_unauthorized: Awaited after a 401, e.g. ``SessionManager.logout``
        """
        self._base_url = base_url.rstrip("/")
        self._auth_strategy = auth_strategy
        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._on_unauthorized = on_unauthorized

    async def _get_client(self) -> httpx.AsyncClient:
        # Auth headers are fetched per request so refreshed tokens are picked up
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the decoded body.

        Raises:
            ApiError: On network failure, timeout or an error status
            ApiAuthenticationError: On 401
        """
        client = await self._get_client()
        headers = await self._auth_strategy.get_auth_headers()

        try:
            response = await client.request(
                method,
                self._url(path),
                json=json_data,
                params=params,
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("%s %s timed out", method, path)
            raise ApiError(f"Request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise ApiError(f"Request failed: {e}") from e

        return await self._handle_response(response)

    async def _handle_response(self, response: httpx.Response) -> Any:
        if response.status_code == 204:
            return None

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        if response.is_success:
            return _unwrap(body)

        message = _error_message(body) or response.reason_phrase or "Request failed"
        masked = mask_sensitive_data(body) if isinstance(body, dict) else body
        logger.warning(
            "Backend returned %s for %s: %s",
            response.status_code,
            response.request.url.path,
            masked,
        )

        if response.status_code == 401:
            if self._on_unauthorized is not None:
                await self._on_unauthorized()
            raise ApiAuthenticationError(message, 401, body)
        raise ApiError(message, response.status_code, body)

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json_data: dict[str, Any] | None = None) -> Any:
        return await self.request("POST", path, json_data=json_data)

    async def put(self, path: str, json_data: dict[str, Any] | None = None) -> Any:
        return await self.request("PUT", path, json_data=json_data)

    async def delete(self, path: str) -> Any:
        return await self.request("DELETE", path)


def _unwrap(body: Any) -> Any:
    """Strip the backend's ``{success, message, data}`` envelope."""
    if isinstance(body, dict) and "data" in body and "success" in body:
        return body["data"]
    return body


def _error_message(body: Any) -> str | None:
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if value:
                return str(value)
    elif isinstance(body, str) and body:
        return body[:200]
    return None
