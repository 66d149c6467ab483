"""PKCE (Proof Key for Code Exchange) implementation.

Implements RFC 7636 with the S256 transform, plus the anti-CSRF
``state`` token that travels with the authorization request.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass

CODE_CHALLENGE_METHOD = "S256"

MIN_VERIFIER_BYTES = 32
STATE_BYTES = 16


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    Attributes:
        code_verifier: Secret kept client-side until the token exchange
        code_challenge: S256 transform of the verifier, sent with the redirect
    """

    code_verifier: str
    code_challenge: str

    def __repr__(self) -> str:
        return f"PKCEPair(code_verifier='***', code_challenge={self.code_challenge!r})"


def generate_code_verifier(nbytes: int = MIN_VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    32 bytes encode to 43 characters of the URL-safe alphabet, the
    RFC 7636 minimum; 96 bytes give the 128-character maximum.

    Raises:
        ValueError: If nbytes is outside 32..96
    """
    if nbytes < MIN_VERIFIER_BYTES:
        msg = "nbytes must be at least 32 for sufficient entropy"
        raise ValueError(msg)
    if nbytes > 96:
        msg = "nbytes must be at most 96 to keep the verifier within 128 characters"
        raise ValueError(msg)

    return secrets.token_urlsafe(nbytes)


def generate_code_challenge(verifier: str) -> str:
    """Compute ``BASE64URL(SHA256(verifier))`` without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(nbytes: int = MIN_VERIFIER_BYTES) -> PKCEPair:
    """Create a fresh verifier and its matching challenge."""
    verifier = generate_code_verifier(nbytes)
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate the opaque anti-CSRF ``state`` value for one login attempt."""
    return secrets.token_urlsafe(STATE_BYTES)
