"""Authorization gates backed by the session and the policy endpoint.

Every path that is not an explicit ``allowed: true`` from the backend
denies: no session, a failed request, a malformed answer, or a decision
still in flight.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from oerms_auth.api.client import ApiError
from oerms_auth.logging_config import get_logger
from oerms_auth.oauth.exceptions import PolicyEvaluationFailed

if TYPE_CHECKING:
    from oerms_auth.api.client import ApiClient
    from oerms_auth.oauth.session import Session, SessionManager

logger = get_logger(__name__)

DEFAULT_POLICY_PATH = "/api/policy/evaluate"

T = TypeVar("T")

PolicyKey = tuple[str, str, str]


@dataclass(frozen=True)
class PolicyDecision:
    """Result of one policy query."""

    allowed: bool = False
    loading: bool = False
    error: str | None = None


PENDING = PolicyDecision(allowed=False, loading=True)
DENIED = PolicyDecision(allowed=False)


def _policy_key(action: str, resource: str, context: dict[str, Any] | None) -> PolicyKey:
    return (action, resource, json.dumps(context or {}, sort_keys=True, default=str))


def _json_safe(context: dict[str, Any] | None) -> Any:
    # Same encoding as the dedupe key, so equal keys send equal payloads
    return json.loads(json.dumps(context or {}, default=str))


class PolicyEvaluator:
    """Asks the backend whether the current user may perform an action."""

    def __init__(
        self,
        session_manager: SessionManager,
        api_client: ApiClient,
        policy_path: str = DEFAULT_POLICY_PATH,
    ) -> None:
        self._session_manager = session_manager
        self._api_client = api_client
        self._policy_path = policy_path
        self._in_flight: dict[PolicyKey, asyncio.Task[bool]] = {}

    async def evaluate(
        self,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        """Decide ``action`` on ``resource``.

        Without an authenticated session the answer is an immediate deny.
        Identical queries issued while one is pending share its request.
        """
        if not self._session_manager.is_authenticated:
            return DENIED

        key = _policy_key(action, resource, context)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._query(action, resource, context))
            task.add_done_callback(lambda t: self._query_finished(key, t))
            self._in_flight[key] = task

        try:
            allowed = await asyncio.shield(task)
        except PolicyEvaluationFailed as e:
            return PolicyDecision(allowed=False, error=e.user_message)
        except asyncio.CancelledError:
            # Only the shared query was cancelled; the caller itself was not
            if not task.cancelled():
                raise
            logger.warning("Policy evaluation for %s on %s was cancelled", action, resource)
            return PolicyDecision(allowed=False, error=PolicyEvaluationFailed.default_user_message)
        return PolicyDecision(allowed=allowed)

    async def is_allowed(
        self,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        return (await self.evaluate(action, resource, context)).allowed

    def _query_finished(self, key: PolicyKey, task: asyncio.Task[bool]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            task.exception()

    async def _query(
        self,
        action: str,
        resource: str,
        context: dict[str, Any] | None,
    ) -> bool:
        try:
            payload = {"action": action, "resource": resource, "context": _json_safe(context)}
            body = await self._api_client.post(self._policy_path, payload)
        except ApiError as e:
            logger.warning("Policy evaluation failed for %s on %s: %s", action, resource, e)
            raise PolicyEvaluationFailed(
                f"Policy evaluation failed for {action} on {resource}", detail=str(e)
            ) from e
        except Exception as e:
            logger.error("Policy evaluation error for %s on %s: %s", action, resource, e)
            raise PolicyEvaluationFailed(
                f"Policy evaluation error for {action} on {resource}", detail=str(e)
            ) from e

        allowed = body.get("allowed") if isinstance(body, dict) else None
        if not isinstance(allowed, bool):
            logger.warning("Policy endpoint returned no boolean decision for %s on %s", action, resource)
            raise PolicyEvaluationFailed(
                f"Policy endpoint returned no decision for {action} on {resource}"
            )

        logger.debug("Policy %s on %s: %s", action, resource, "allow" if allowed else "deny")
        return allowed


class PolicyGate:
    """A live policy decision for one (action, resource, context).

    Re-evaluates when its query changes or when the user signs in or out,
    and renders its children only on an explicit allow.
    """

    def __init__(
        self,
        evaluator: PolicyEvaluator,
        session_manager: SessionManager,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self._evaluator = evaluator
        self._action = action
        self._resource = resource
        self._context = context
        self._decision = PENDING
        self._version = 0
        self._closed = False
        self._pending: asyncio.Task[PolicyDecision] | None = None

        session = session_manager.session
        self._seen = (session.is_authenticated, session.user)
        self._unsubscribe = session_manager.subscribe(self._on_session_change)

    @property
    def decision(self) -> PolicyDecision:
        return self._decision

    async def refresh(self) -> PolicyDecision:
        """Evaluate the current query; stale results are dropped."""
        self._version += 1
        version = self._version
        self._decision = PENDING

        try:
            decision = await self._evaluator.evaluate(self._action, self._resource, self._context)
        except Exception as e:
            logger.error("PolicyGate error for %s on %s: %s", self._action, self._resource, e)
            decision = PolicyDecision(allowed=False, error="Failed to evaluate policy")

        if self._closed or version != self._version:
            return self._decision

        self._decision = decision
        return decision

    async def update(
        self,
        action: str,
        resource: str,
        context: dict[str, Any] | None = None,
    ) -> PolicyDecision:
        """Point the gate at a new query, re-evaluating if it changed."""
        if _policy_key(action, resource, context) == _policy_key(
            self._action, self._resource, self._context
        ) and not self._decision.loading:
            return self._decision

        self._action = action
        self._resource = resource
        self._context = context
        return await self.refresh()

    def _on_session_change(self, session: Session) -> None:
        seen = (session.is_authenticated, session.user)
        if seen == self._seen or self._closed:
            return
        self._seen = seen
        self._pending = asyncio.get_running_loop().create_task(self.refresh())

    def render(self, children: T, fallback: T | None = None, loading: T | None = None) -> T | None:
        """Pick what to show for the current decision."""
        decision = self._decision
        if decision.loading:
            return loading
        if decision.error:
            logger.debug("PolicyGate denying %s on %s: %s", self._action, self._resource, decision.error)
            return fallback
        return children if decision.allowed else fallback

    async def close(self) -> None:
        """Detach from the session; in-flight results are discarded."""
        self._closed = True
        self._unsubscribe()
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()


class RoleGate:
    """Shows children to authenticated users holding the given roles."""

    def __init__(
        self,
        session_manager: SessionManager,
        roles: Iterable[str] = (),
        require_all: bool = False,
    ) -> None:
        self._session_manager = session_manager
        self._roles = tuple(roles)
        self._require_all = require_all

    @property
    def allowed(self) -> bool:
        if not self._session_manager.is_authenticated:
            return False
        if not self._roles:
            return True
        if self._require_all:
            return self._session_manager.has_all_roles(self._roles)
        return self._session_manager.has_any_role(self._roles)

    def render(self, children: T, fallback: T | None = None) -> T | None:
        return children if self.allowed else fallback
