"""Session management for the signed-in user.

The session is never edited directly: it is derived from the stored
:class:`TokenRecord` on start-up, after a login callback, after a refresh
and whenever another writer changes the storage area.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import jwt

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.exceptions import RefreshFailed

if TYPE_CHECKING:
    from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow
    from oerms_auth.oauth.token_store import TokenRecord, TokenStore

logger = get_logger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(seconds=60)

# Floor between consecutive proactive refreshes, in seconds
MIN_REFRESH_INTERVAL = 1.0

ROLE_PREFIX = "ROLE_"

SessionListener = Callable[["Session"], None]


class TokenDecodeError(ValueError):
    """The access token is not a readable JWT."""


def decode_access_token(token: str) -> dict[str, Any]:
    """Read the claims of an access token without verifying it.

    The signature is checked by the backend on every request; the client
    only needs the claims to drive the UI.

    Raises:
        TokenDecodeError: If the token is not a well-formed JWT
    """
    try:
        claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.PyJWTError as e:
        raise TokenDecodeError(f"Cannot decode access token: {e}") from e
    if not isinstance(claims, dict):
        raise TokenDecodeError("Access token claims are not an object")
    return claims


def _claim_set(value: Any) -> frozenset[str]:
    # Spring encodes authorities as a list; scope-style claims as a string
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(part for part in value.replace(",", " ").split() if part)
    if isinstance(value, Iterable):
        return frozenset(str(item) for item in value if item)
    return frozenset()


@dataclass(frozen=True)
class UserRecord:
    """The signed-in user as described by the access token claims."""

    id: str
    username: str
    email: str
    roles: frozenset[str] = field(default_factory=frozenset)
    authorities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> UserRecord:
        """Map OERMS access token claims to a user.

        Raises:
            TokenDecodeError: If the claims identify no subject
        """
        user_id = claims.get("userId") or claims.get("sub") or claims.get("id")
        if not user_id:
            raise TokenDecodeError("Access token has no subject")

        username = claims.get("username") or claims.get("preferred_username") or claims.get("sub")
        return cls(
            id=str(user_id),
            username=str(username or ""),
            email=str(claims.get("email") or ""),
            roles=_claim_set(claims.get("roles")),
            authorities=_claim_set(claims.get("authorities")),
        )


@dataclass(frozen=True)
class Session:
    """Immutable snapshot of the authentication state."""

    user: UserRecord | None = None
    is_authenticated: bool = False
    is_loading: bool = False


ANONYMOUS = Session()


class SessionManager:
    """Owns the process-wide :class:`Session`.

    Create one per application mount, call :meth:`initialize` when the
    application starts and :meth:`close` when it stops. Only this class
    mutates the session; gates and evaluators read it and subscribe to
    changes.
    """

    def __init__(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow | None = None,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
    ) -> None:
        """Initialize session manager.

        Args:
            token_store: Where the token record lives
            oauth_flow: Flow used for refresh and revocation; without it
                expired sessions simply end
            refresh_buffer: How long before expiry to refresh proactively
        """
        self._token_store = token_store
        self._oauth_flow = oauth_flow
        self._refresh_buffer = refresh_buffer

        self._session = Session(is_loading=True)
        self._record: TokenRecord | None = None
        self._listeners: list[SessionListener] = []

        self._init_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[Session] | None = None
        self._scheduled_refresh: asyncio.Task[None] | None = None

        # Bumped by logout/close/degrade; in-flight work started under an
        # older generation must not write its result back
        self._generation = 0
        self._closed = False

    # -- reading --------------------------------------------------------

    @property
    def session(self) -> Session:
        """Current snapshot.

        Reports anonymous if the access token expired since the session
        was derived and no refresh has replaced it yet.
        """
        current = self._session
        if current.is_authenticated and (self._record is None or self._record.is_expired):
            return ANONYMOUS
        return current

    @property
    def user(self) -> UserRecord | None:
        return self.session.user

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self.session.is_loading

    @property
    def is_closed(self) -> bool:
        return self._closed

    def has_role(self, role: str) -> bool:
        """Check role membership, accepting Spring's ``ROLE_`` prefix."""
        user = self.session.user
        if user is None:
            return False
        return role in user.roles or f"{ROLE_PREFIX}{role}" in user.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        return any(self.has_role(role) for role in roles)

    def has_all_roles(self, roles: Iterable[str]) -> bool:
        if self.session.user is None:
            return False
        return all(self.has_role(role) for role in roles)

    def get_display_name(self) -> str:
        user = self.session.user
        if user is None:
            return "Guest"
        return user.username or user.email or "User"

    async def get_access_token(self) -> str | None:
        """Return a usable access token, refreshing first once it is inside its refresh window."""
        record = self._record
        if record is None or not self._session.is_authenticated:
            return None

        if record.needs_refresh(self._refresh_buffer) and record.refresh_token and self._oauth_flow:
            try:
                await self.refresh()
            except RefreshFailed:
                return None
            record = self._record
            if record is None:
                return None

        if record.is_expired:
            return None
        return record.access_token

    async def get_auth_headers(self) -> dict[str, str]:
        """Authorization header for backend calls, empty when signed out."""
        token = await self.get_access_token()
        if token is None:
            return {}
        return {"Authorization": f"Bearer {token}"}

    # -- observers ------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Call ``listener`` with the new snapshot after every change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_session(self, session: Session) -> None:
        if self._closed or session == self._session:
            return
        self._session = session
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception as e:
                logger.error("Session listener %r failed: %s", listener, e)

    # -- lifecycle ------------------------------------------------------

    async def initialize(self) -> Session:
        """Resolve the session from storage.

        Concurrent and repeated calls share one resolution.
        """
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        await asyncio.shield(self._init_task)
        return self.session

    async def _initialize(self) -> None:
        try:
            record = await self._token_store.load()
            await self._resolve(record)
        finally:
            if self._session.is_loading:
                self._set_session(replace(self._session, is_loading=False))
            logger.debug("Session initialized (authenticated=%s)", self._session.is_authenticated)

    async def _resolve(self, record: TokenRecord | None) -> None:
        if record is None:
            logger.debug("No stored tokens; session is anonymous")
            self._record = None
            self._set_session(ANONYMOUS)
            return

        if record.is_expired:
            logger.info("Stored access token expired; attempting silent refresh")
            self._record = record
            try:
                await self.refresh()
            except RefreshFailed as e:
                logger.warning("Silent refresh failed: %s", e)
            return

        await self._derive(record)

    async def _derive(self, record: TokenRecord) -> None:
        try:
            user = UserRecord.from_claims(decode_access_token(record.access_token))
        except TokenDecodeError as e:
            logger.warning("Stored access token is unusable, signing out: %s", e)
            await self._degrade()
            return

        self._record = record
        self._set_session(Session(user=user, is_authenticated=True, is_loading=False))
        self._schedule_refresh(record)

    async def sync(self) -> Session:
        """Re-derive the session after the token store changed.

        Used after a login callback and when another instance sharing the
        storage area signed in, refreshed or signed out.
        """
        await self._token_store.reload()
        record = await self._token_store.load()
        if record is None:
            self._generation += 1
            self._cancel_scheduled_refresh()
        await self._resolve(record)
        if self._session.is_loading:
            self._set_session(replace(self._session, is_loading=False))
        return self.session

    async def logout(self) -> None:
        """Sign out. Idempotent and never raises."""
        self._generation += 1
        self._cancel_scheduled_refresh()

        record = self._record or await self._token_store.load()
        self._record = None

        await self._token_store.clear()
        self._set_session(ANONYMOUS)

        if record is not None and self._oauth_flow is not None:
            await self._revoke_quietly(record)

        logger.info("Logged out")

    async def _revoke_quietly(self, record: TokenRecord) -> None:
        if self._oauth_flow is None:
            return
        try:
            await self._oauth_flow.revoke_token(record.access_token, "access_token")
            if record.refresh_token:
                await self._oauth_flow.revoke_token(record.refresh_token, "refresh_token")
        except Exception as e:
            logger.warning("Token revocation during logout failed: %s", e)

    async def close(self) -> None:
        """Tear down on application unmount.

        Pending work is cancelled and any result that still arrives is
        discarded.
        """
        self._closed = True
        self._generation += 1
        self._cancel_scheduled_refresh()
        for task in (self._refresh_task, self._init_task):
            if task is not None and not task.done():
                task.cancel()
        self._listeners.clear()

    # -- refresh --------------------------------------------------------

    async def refresh(self) -> Session:
        """Renew the tokens.

        Only one refresh runs at a time; callers arriving while one is in
        flight await the same outcome.

        Raises:
            RefreshFailed: If renewal failed; the session is then anonymous
        """
        if self._closed:
            raise RefreshFailed("Session manager is closed")
        if self._refresh_task is None:
            task = asyncio.create_task(self._run_refresh())
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_finished(self, task: asyncio.Task[Session]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiters receive it through shield
            task.exception()

    async def _run_refresh(self) -> Session:
        generation = self._generation
        record = self._record or await self._token_store.load()

        if record is None or not record.refresh_token or self._oauth_flow is None:
            await self._degrade()
            raise RefreshFailed("No refresh token available")

        try:
            new_record = await self._oauth_flow.refresh_access_token(record.refresh_token)
        except RefreshFailed:
            if generation == self._generation:
                await self._degrade()
            raise

        if generation != self._generation or self._closed:
            logger.debug("Discarding refresh result for a session that has ended")
            return self.session

        await self._token_store.save(new_record)
        await self._derive(new_record)
        return self.session

    def _schedule_refresh(self, record: TokenRecord) -> None:
        self._cancel_scheduled_refresh()
        if self._closed or self._oauth_flow is None or not record.refresh_token:
            return

        window = record.refresh_window(self._refresh_buffer).total_seconds()
        delay = max(0.0, record.seconds_until_expiry() - window)
        if record.issued_at is not None:
            # Tokens with a known lifetime are never renewed back to back
            delay = max(delay, MIN_REFRESH_INTERVAL)
        self._scheduled_refresh = asyncio.create_task(self._refresh_after(delay))
        logger.debug("Scheduled token refresh in %.0fs", delay)

    async def _refresh_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach first so the successful refresh can schedule the next one
        self._scheduled_refresh = None
        try:
            await self.refresh()
        except RefreshFailed as e:
            logger.warning("Proactive refresh failed, session ended: %s", e)

    def _cancel_scheduled_refresh(self) -> None:
        task = self._scheduled_refresh
        self._scheduled_refresh = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _degrade(self) -> None:
        self._generation += 1
        self._cancel_scheduled_refresh()
        self._record = None
        await self._token_store.clear()
        self._set_session(ANONYMOUS)
