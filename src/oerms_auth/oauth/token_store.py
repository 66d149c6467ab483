"""Token storage.

The access token, refresh token and expiry are written as one JSON value
under a single key, so a reader never observes a partial record.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.storage import StorageArea

logger = get_logger(__name__)

TOKENS_KEY = "oerms_auth.tokens"

# Used when the token endpoint omits expires_in (server default is one hour)
DEFAULT_EXPIRES_IN = 3600

# Upper bound accepted for expires_in (one year)
MAX_EXPIRES_IN = 365 * 24 * 3600


class TokenRecordError(ValueError):
    """A stored or received token payload is unusable."""


@dataclass(frozen=True)
class TokenRecord:
    """Access/refresh token pair with its absolute expiry."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    issued_at: datetime | None = None

    def __repr__(self) -> str:
        return f"TokenRecord(access_token='***', expires_at={self.expires_at.isoformat()})"

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        return datetime.now(UTC) >= self.expires_at

    def refresh_window(self, buffer: timedelta) -> timedelta:
        """How long before expiry a refresh is due.

        A token whose whole lifetime is shorter than ``buffer`` is renewed
        halfway through its lifetime instead of immediately.
        """
        if self.issued_at is None:
            return buffer
        return min(buffer, (self.expires_at - self.issued_at) / 2)

    def needs_refresh(self, buffer: timedelta) -> bool:
        """True once the token is inside its refresh window."""
        return datetime.now(UTC) >= (self.expires_at - self.refresh_window(buffer))

    def seconds_until_expiry(self) -> float:
        return (self.expires_at - datetime.now(UTC)).total_seconds()

    @classmethod
    def from_token_response(
        cls,
        response: dict[str, Any],
        previous_refresh_token: str | None = None,
    ) -> TokenRecord:
        """Build a record from an ``/oauth2/token`` response body.

        Args:
            response: Parsed JSON body
            previous_refresh_token: Kept when a refresh response omits one

        Raises:
            TokenRecordError: If ``access_token`` is missing or ``expires_in``
                is not a positive number of seconds up to a year
        """
        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise TokenRecordError("Token response has no access_token")

        raw_expires_in = response.get("expires_in", DEFAULT_EXPIRES_IN)
        try:
            expires_in = float(raw_expires_in)
        except (TypeError, ValueError, OverflowError) as e:
            raise TokenRecordError(f"Invalid expires_in: {raw_expires_in!r}") from e
        if not math.isfinite(expires_in) or not 0 < expires_in <= MAX_EXPIRES_IN:
            raise TokenRecordError(f"expires_in out of range: {raw_expires_in!r}")

        refresh_token = response.get("refresh_token") or previous_refresh_token

        issued_at = datetime.now(UTC)
        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=issued_at + timedelta(seconds=expires_in),
            issued_at=issued_at,
        )

    def to_json(self) -> str:
        return json.dumps({
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.timestamp(),
            "issued_at": self.issued_at.timestamp() if self.issued_at else None,
        })

    @classmethod
    def from_json(cls, raw: str) -> TokenRecord:
        """Parse a stored record.

        Raises:
            TokenRecordError: If the value is not a complete record
        """
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise TokenRecordError(f"Stored tokens are not JSON: {e}") from e

        if not isinstance(data, dict):
            raise TokenRecordError("Stored tokens are not an object")

        access_token = data.get("access_token")
        expires_at = data.get("expires_at")
        if not isinstance(access_token, str) or not access_token:
            raise TokenRecordError("Stored tokens have no access_token")
        if not isinstance(expires_at, int | float):
            raise TokenRecordError("Stored tokens have no expires_at")

        issued_at = data.get("issued_at")
        if issued_at is not None and not isinstance(issued_at, int | float):
            raise TokenRecordError("Stored tokens have an invalid issued_at")

        refresh_token = data.get("refresh_token")
        try:
            return cls(
                access_token=access_token,
                refresh_token=str(refresh_token) if refresh_token else None,
                expires_at=datetime.fromtimestamp(float(expires_at), tz=UTC),
                issued_at=(
                    datetime.fromtimestamp(float(issued_at), tz=UTC) if issued_at is not None else None
                ),
            )
        except (OverflowError, OSError, ValueError) as e:
            raise TokenRecordError(f"Stored token timestamps are out of range: {e}") from e


class TokenStore:
    """Persists the current :class:`TokenRecord` in a storage area."""

    def __init__(self, storage: StorageArea) -> None:
        self._storage = storage

    @property
    def storage(self) -> StorageArea:
        return self._storage

    async def save(self, tokens: TokenRecord) -> None:
        """Store ``tokens``, replacing any previous record."""
        await self._storage.set_item(TOKENS_KEY, tokens.to_json())
        logger.debug("Stored tokens (expires %s)", tokens.expires_at.isoformat())

    async def load(self) -> TokenRecord | None:
        """Return the stored record, or None.

        Never raises. A corrupt value is removed and reported as absent.
        """
        try:
            raw = await self._storage.get_item(TOKENS_KEY)
        except Exception as e:
            logger.error("Failed to read stored tokens: %s", e)
            return None

        if raw is None:
            return None

        try:
            return TokenRecord.from_json(raw)
        except TokenRecordError as e:
            logger.warning("Discarding corrupt stored tokens: %s", e)
            await self.clear()
            return None

    async def clear(self) -> None:
        """Remove the stored record. Idempotent."""
        try:
            await self._storage.remove_item(TOKENS_KEY)
        except Exception as e:
            logger.error("Failed to clear stored tokens: %s", e)
            return
        logger.debug("Cleared stored tokens")

    async def reload(self) -> None:
        """Re-read from the backing storage on the next load."""
        await self._storage.reload()
