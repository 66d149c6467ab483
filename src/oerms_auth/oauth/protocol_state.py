"""Single-use state of one in-progress login.

Holds the anti-CSRF ``state`` and the PKCE verifier between the redirect
to the identity provider and the callback. Both are removed together by
the callback handler, whatever the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.storage import StorageArea
from oerms_auth.security import fingerprint

logger = get_logger(__name__)

STATE_KEY = "oerms_auth.oauth_state"
VERIFIER_KEY = "oerms_auth.pkce_verifier"


@dataclass(frozen=True)
class ProtocolState:
    """Values recorded before redirect.

    Either half may be None when read back if storage lost it.
    """

    state: str | None
    code_verifier: str | None

    def __repr__(self) -> str:
        return f"ProtocolState(state={fingerprint(self.state)!r}, code_verifier='***')"


class ProtocolStateStore:
    """Reads and writes :class:`ProtocolState` under two fixed keys."""

    def __init__(self, storage: StorageArea) -> None:
        self._storage = storage

    async def save(self, state: str, code_verifier: str) -> None:
        # A new attempt supersedes any abandoned one
        await self._storage.set_item(VERIFIER_KEY, code_verifier)
        await self._storage.set_item(STATE_KEY, state)
        logger.debug("Recorded protocol state %s", fingerprint(state))

    async def load(self) -> ProtocolState | None:
        """Return what is stored, or None when neither key is present."""
        state = await self._storage.get_item(STATE_KEY)
        verifier = await self._storage.get_item(VERIFIER_KEY)
        if state is None and verifier is None:
            return None
        return ProtocolState(state=state, code_verifier=verifier)

    async def clear(self) -> None:
        """Remove both keys. Idempotent."""
        await self._storage.remove_item(STATE_KEY)
        await self._storage.remove_item(VERIFIER_KEY)
