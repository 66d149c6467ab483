"""Errors raised by the login, refresh and authorization flows.

Every error carries a human-readable ``user_message`` and a
``retry_url`` so the UI can show an actionable message with a way back
to login instead of a stack trace.
"""

from __future__ import annotations

from oerms_auth.security import OAuthError

DEFAULT_RETRY_URL = "/login"


class AuthFlowError(OAuthError):
    """Base class for auth core failures.

    Attributes:
        message: Technical description, safe to log
        user_message: Text shown to the user
        retry_url: Route that lets the user start over
        detail: Backend- or provider-supplied detail, if any
    """

    code = "auth_error"
    default_user_message = "Authentication failed. Please sign in again."

    def __init__(
        self,
        message: str,
        *,
        user_message: str | None = None,
        retry_url: str = DEFAULT_RETRY_URL,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.retry_url = retry_url
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message

    def to_dict(self) -> dict[str, str]:
        """Serialise for an error page or JSON response."""
        return {
            "error": self.code,
            "message": self.user_message,
            "retry_url": self.retry_url,
        }


class ProviderError(AuthFlowError):
    """The identity provider redirected back with an ``error`` parameter."""

    code = "provider_error"

    def __init__(self, error: str, description: str | None = None) -> None:
        text = f"{error}: {description}" if description else error
        super().__init__(
            "Identity provider reported an error",
            user_message=f"Authentication failed: {text}",
            detail=text,
        )
        self.error = error
        self.description = description


class InvalidCallback(AuthFlowError):
    """The callback is missing ``code`` or ``state``."""

    code = "invalid_callback"
    default_user_message = "Invalid callback parameters. Please sign in again."


class CsrfMismatch(AuthFlowError):
    """Returned ``state`` does not match the one stored before redirect."""

    code = "csrf_mismatch"
    default_user_message = (
        "The sign-in request could not be verified (possible CSRF attack). "
        "Please sign in again."
    )


class MissingVerifier(AuthFlowError):
    """The PKCE verifier was lost between redirect and callback."""

    code = "missing_verifier"
    default_user_message = "Your sign-in session expired. Please sign in again."


class TokenExchangeFailed(AuthFlowError):
    """The token endpoint rejected the code exchange or was unreachable."""

    code = "token_exchange_failed"
    default_user_message = "We could not complete sign-in. Please try again."

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class RefreshFailed(AuthFlowError):
    """The session could not be renewed silently."""

    code = "refresh_failed"
    default_user_message = "Your session has expired. Please sign in again."

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status_code = status_code


class PolicyEvaluationFailed(AuthFlowError):
    """The policy endpoint could not produce a decision."""

    code = "policy_evaluation_failed"
    default_user_message = "Failed to evaluate policy"
