"""Tests for session management."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import timedelta

import httpx
import pytest
import respx

from oerms_auth.oauth.exceptions import RefreshFailed
from oerms_auth.oauth.flows import OAuth2AuthorizationCodeFlow
from oerms_auth.oauth.session import (
    Session,
    SessionManager,
    TokenDecodeError,
    UserRecord,
    decode_access_token,
)
from oerms_auth.oauth.token_store import TokenRecord, TokenStore

TOKEN_URL = "https://auth.example.com/oauth2/token"
REVOKE_URL = "https://auth.example.com/oauth2/revoke"


class GatedFlow:
    """Flow whose refresh waits until the test releases it."""

    def __init__(self, record: TokenRecord) -> None:
        self.record = record
        self.release = asyncio.Event()
        self.refresh_calls = 0
        self.revoked: list[str] = []

    async def refresh_access_token(self, refresh_token: str) -> TokenRecord:
        self.refresh_calls += 1
        await self.release.wait()
        return self.record

    async def revoke_token(self, token: str, token_type_hint: str = "access_token") -> bool:
        self.revoked.append(token_type_hint)
        return True


class TestUserRecord:
    """Tests for claim mapping."""

    def test_from_claims(self, make_access_token: Callable[..., str]) -> None:
        """Test mapping OERMS claims to a user."""
        claims = decode_access_token(
            make_access_token(user_id="7", username="bob", roles=["ROLE_ADMIN", "ROLE_TEACHER"])
        )
        user = UserRecord.from_claims(claims)

        assert user.id == "7"
        assert user.username == "bob"
        assert user.email == "alice@example.com"
        assert user.roles == frozenset({"ROLE_ADMIN", "ROLE_TEACHER"})
        assert user.authorities == frozenset({"read", "write"})

    def test_falls_back_to_sub(self) -> None:
        """Test that sub identifies the user when userId is absent."""
        user = UserRecord.from_claims({"sub": "carol", "roles": "ROLE_STUDENT"})
        assert user.id == "carol"
        assert user.username == "carol"
        assert user.roles == frozenset({"ROLE_STUDENT"})

    def test_requires_subject(self) -> None:
        """Test that claims without any identifier are rejected."""
        with pytest.raises(TokenDecodeError):
            UserRecord.from_claims({"email": "x@example.com"})

    def test_decode_rejects_garbage(self) -> None:
        """Test that an opaque token is not decodable."""
        with pytest.raises(TokenDecodeError):
            decode_access_token("not-a-jwt")


class TestInitialize:
    """Tests for resolving the session on start-up."""

    @pytest.mark.asyncio
    async def test_starts_loading(self, token_store: TokenStore) -> None:
        """Test that the session reports loading before initialization."""
        manager = SessionManager(token_store)
        assert manager.is_loading is True
        assert manager.is_authenticated is False

    @pytest.mark.asyncio
    async def test_no_tokens(self, token_store: TokenStore) -> None:
        """Test that an empty store yields an anonymous session."""
        manager = SessionManager(token_store)
        session = await manager.initialize()

        assert session == Session()
        assert manager.get_display_name() == "Guest"

    @respx.mock(assert_all_called=False)
    @pytest.mark.asyncio
    async def test_valid_stored_tokens(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that valid stored tokens sign the user in without any request."""
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(500))
        await token_store.save(make_record(roles=["ROLE_STUDENT"]))
        manager = SessionManager(token_store, oauth_flow)

        session = await manager.initialize()

        assert session.is_authenticated is True
        assert session.is_loading is False
        assert session.user is not None and session.user.username == "alice"
        assert manager.has_role("STUDENT")
        assert manager.get_display_name() == "alice"
        assert route.call_count == 0

        await manager.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_expired_tokens_refreshed(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
        make_access_token: Callable[..., str],
    ) -> None:
        """Test that an expired access token is silently renewed on start-up."""
        fresh = make_access_token(username="alice-renewed")
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": fresh, "expires_in": 3600})
        )
        await token_store.save(make_record(expires_in=-10, refresh_token="r-old"))
        manager = SessionManager(token_store, oauth_flow)

        session = await manager.initialize()

        assert route.call_count == 1
        assert session.is_authenticated is True
        assert session.user is not None and session.user.username == "alice-renewed"
        stored = await token_store.load()
        assert stored is not None
        assert stored.access_token == fresh
        assert stored.refresh_token == "r-old"

        await manager.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_expired_tokens_refresh_rejected(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that a failed silent refresh ends the session and clears storage."""
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
        await token_store.save(make_record(expires_in=-10))
        manager = SessionManager(token_store, oauth_flow)

        session = await manager.initialize()

        assert session.is_authenticated is False
        assert session.is_loading is False
        assert await token_store.load() is None

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that expired tokens without a refresh token sign the user out."""
        await token_store.save(make_record(expires_in=-10, refresh_token=None))
        manager = SessionManager(token_store)

        session = await manager.initialize()

        assert session.is_authenticated is False
        assert await token_store.load() is None

    @pytest.mark.asyncio
    async def test_undecodable_token(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that a token without readable claims is discarded."""
        await token_store.save(make_record(access_token="opaque-token"))
        manager = SessionManager(token_store)

        session = await manager.initialize()

        assert session.is_authenticated is False
        assert await token_store.load() is None

    @pytest.mark.asyncio
    async def test_concurrent_initialize(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that concurrent initialize calls share one resolution."""
        await token_store.save(make_record())
        manager = SessionManager(token_store)

        sessions = await asyncio.gather(*(manager.initialize() for _ in range(5)))

        assert all(s.is_authenticated for s in sessions)
        await manager.close()

    @pytest.mark.asyncio
    async def test_session_expires_without_refresh(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that the snapshot downgrades once the access token expires."""
        await token_store.save(make_record(expires_in=0.2, refresh_token=None))
        manager = SessionManager(token_store)
        await manager.initialize()
        assert manager.is_authenticated is True

        await asyncio.sleep(0.3)

        assert manager.is_authenticated is False
        assert manager.user is None
        assert await manager.get_access_token() is None


class TestRoles:
    """Tests for role checks."""

    @pytest.mark.asyncio
    async def test_no_user(self, token_store: TokenStore) -> None:
        """Test that every role check fails without a user."""
        manager = SessionManager(token_store)
        await manager.initialize()

        assert manager.has_role("ADMIN") is False
        assert manager.has_role("") is False
        assert manager.has_any_role(["ADMIN", "STUDENT"]) is False
        assert manager.has_all_roles([]) is False

    @pytest.mark.asyncio
    async def test_prefix_and_combinations(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test role checks with and without the ROLE_ prefix."""
        await token_store.save(make_record(roles=["ROLE_TEACHER", "GRADER"]))
        manager = SessionManager(token_store)
        await manager.initialize()

        assert manager.has_role("TEACHER")
        assert manager.has_role("ROLE_TEACHER")
        assert manager.has_role("GRADER")
        assert not manager.has_role("ADMIN")
        assert manager.has_any_role(["ADMIN", "GRADER"])
        assert manager.has_all_roles(["TEACHER", "GRADER"])
        assert not manager.has_all_roles(["TEACHER", "ADMIN"])

        await manager.close()


class TestRefresh:
    """Tests for token renewal."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_request(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
        make_access_token: Callable[..., str],
    ) -> None:
        """Test that concurrent refreshes share one token request."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200,
                json={"access_token": make_access_token(), "refresh_token": "r2", "expires_in": 3600},
            )
        )
        await token_store.save(make_record())
        manager = SessionManager(token_store, oauth_flow)
        await manager.initialize()

        results = await asyncio.gather(*(manager.refresh() for _ in range(5)))

        assert route.call_count == 1
        assert all(r.is_authenticated for r in results)
        stored = await token_store.load()
        assert stored is not None and stored.refresh_token == "r2"

        await manager.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_concurrent_refresh_failure_shared(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that every concurrent caller sees the one failure."""
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(401))
        await token_store.save(make_record())
        manager = SessionManager(token_store, oauth_flow)
        await manager.initialize()

        results = await asyncio.gather(
            *(manager.refresh() for _ in range(3)), return_exceptions=True
        )

        assert route.call_count == 1
        assert all(isinstance(r, RefreshFailed) for r in results)
        assert manager.is_authenticated is False
        assert await token_store.load() is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_access_token_refreshed_near_expiry(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
        make_access_token: Callable[..., str],
    ) -> None:
        """Test that handing out a nearly expired token refreshes it first."""
        fresh = make_access_token(username="renewed")
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": fresh, "expires_in": 3600})
        )
        await token_store.save(make_record(expires_in=30))
        manager = SessionManager(token_store, oauth_flow)
        await manager.initialize()

        headers = await manager.get_auth_headers()

        assert headers == {"Authorization": f"Bearer {fresh}"}
        await manager.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_proactive_refresh_once_per_window(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
        make_access_token: Callable[..., str],
    ) -> None:
        """Test that a token inside the buffer is renewed once in the background."""
        route = respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": make_access_token(), "expires_in": 3600}
            )
        )
        await token_store.save(make_record(expires_in=30))
        manager = SessionManager(token_store, oauth_flow, refresh_buffer=timedelta(seconds=60))
        await manager.initialize()

        await asyncio.sleep(0.1)

        assert route.call_count == 1
        assert manager.is_authenticated is True
        stored = await token_store.load()
        assert stored is not None and stored.seconds_until_expiry() > 3000

        await manager.close()

    @respx.mock
    @pytest.mark.asyncio
    async def test_short_lived_tokens_refresh_at_half_life(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
        make_access_token: Callable[..., str],
    ) -> None:
        """Test that tokens shorter-lived than the buffer are not renewed in a loop."""
        route = respx.post(TOKEN_URL).mock(
            side_effect=lambda request: httpx.Response(
                200, json={"access_token": make_access_token(), "expires_in": 30}
            )
        )
        await token_store.save(make_record(expires_in=30))
        manager = SessionManager(token_store, oauth_flow, refresh_buffer=timedelta(seconds=60))
        await manager.initialize()

        await asyncio.sleep(0.2)
        for _ in range(5):
            assert await manager.get_auth_headers() != {}

        assert route.call_count == 1
        assert manager.is_authenticated is True
        stored = await token_store.load()
        assert stored is not None and stored.issued_at is not None
        assert stored.needs_refresh(timedelta(seconds=60)) is False

        await manager.close()

    @pytest.mark.asyncio
    async def test_refresh_after_logout_discarded(
        self,
        token_store: TokenStore,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that a refresh completing after logout does not sign back in."""
        flow = GatedFlow(make_record())
        await token_store.save(make_record())
        manager = SessionManager(token_store, flow)  # type: ignore[arg-type]
        await manager.initialize()

        pending = asyncio.create_task(manager.refresh())
        while flow.refresh_calls == 0:
            await asyncio.sleep(0)
        await manager.logout()
        flow.release.set()
        await pending

        assert flow.refresh_calls == 1
        assert manager.is_authenticated is False
        assert await token_store.load() is None
        await manager.close()

    @pytest.mark.asyncio
    async def test_refresh_after_close_discarded(
        self,
        token_store: TokenStore,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that closing cancels in-flight work and later refreshes fail."""
        flow = GatedFlow(make_record())
        await token_store.save(make_record())
        manager = SessionManager(token_store, flow)  # type: ignore[arg-type]
        await manager.initialize()

        pending = asyncio.create_task(manager.refresh())
        while flow.refresh_calls == 0:
            await asyncio.sleep(0)
        await manager.close()
        flow.release.set()

        with pytest.raises(asyncio.CancelledError):
            await pending
        assert manager.is_closed is True
        with pytest.raises(RefreshFailed):
            await manager.refresh()


class TestLogout:
    """Tests for signing out."""

    @respx.mock
    @pytest.mark.asyncio
    async def test_logout_clears_and_revokes(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that logout clears storage and revokes both tokens."""
        route = respx.post(REVOKE_URL).mock(return_value=httpx.Response(200))
        await token_store.save(make_record())
        manager = SessionManager(token_store, oauth_flow)
        await manager.initialize()
        changes: list[Session] = []
        manager.subscribe(changes.append)

        await manager.logout()

        assert manager.is_authenticated is False
        assert await token_store.load() is None
        assert route.call_count == 2
        assert changes and changes[-1].is_authenticated is False

    @respx.mock
    @pytest.mark.asyncio
    async def test_logout_survives_revoke_failure(
        self,
        token_store: TokenStore,
        oauth_flow: OAuth2AuthorizationCodeFlow,
        make_record: Callable[..., TokenRecord],
    ) -> None:
        """Test that an unreachable revocation endpoint does not block logout."""
        respx.post(REVOKE_URL).mock(side_effect=httpx.ConnectError("down"))
        await token_store.save(make_record())
        manager = SessionManager(token_store, oauth_flow)
        await manager.initialize()

        await manager.logout()

        assert manager.is_authenticated is False
        assert await token_store.load() is None

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that logging out twice, or while signed out, is harmless."""
        await token_store.save(make_record())
        manager = SessionManager(token_store)
        await manager.initialize()

        await manager.logout()
        await manager.logout()

        assert manager.session == Session()


class TestSync:
    """Tests for re-deriving the session after storage changes."""

    @pytest.mark.asyncio
    async def test_other_writer_signs_in_and_out(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that sync follows sign-in and sign-out made elsewhere."""
        manager = SessionManager(token_store)
        await manager.initialize()
        seen: list[bool] = []
        unsubscribe = manager.subscribe(lambda s: seen.append(s.is_authenticated))

        await token_store.save(make_record())
        await manager.sync()
        assert manager.is_authenticated is True

        await token_store.clear()
        await manager.sync()
        assert manager.is_authenticated is False

        unsubscribe()
        await token_store.save(make_record())
        await manager.sync()

        assert seen == [True, False]
        await manager.close()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(
        self, token_store: TokenStore, make_record: Callable[..., TokenRecord]
    ) -> None:
        """Test that one failing listener does not stop notification."""
        manager = SessionManager(token_store)
        await manager.initialize()
        seen: list[Session] = []

        def broken(session: Session) -> None:
            raise RuntimeError("listener bug")

        manager.subscribe(broken)
        manager.subscribe(seen.append)

        await token_store.save(make_record())
        await manager.sync()

        assert len(seen) == 1
        await manager.close()
