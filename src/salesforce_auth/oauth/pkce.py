"""PKCE (RFC 7636) helpers for the authorization code flow.

Used when OAUTH_USE_PKCE is enabled: the verifier is kept with the
pending authorization and sent on code exchange, the challenge goes on
the authorization URL.
"""

from __future__ import annotations

import base64
import hashlib
import secrets

CHALLENGE_METHOD = "S256"


def generate_pkce_pair() -> tuple[str, str]:
    """Return a fresh (code_verifier, code_challenge) pair.

    The verifier is 32 random bytes, base64url encoded (43 chars).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_challenge(code_verifier)


def compute_challenge(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(code_verifier: str, code_challenge: str) -> bool:
    """Constant-time check that a verifier produces the given challenge."""
    return secrets.compare_digest(compute_challenge(code_verifier), code_challenge)


def challenge_params(code_verifier: str) -> dict[str, str]:
    """Authorization URL parameters for a verifier."""
    return {
        "code_challenge": compute_challenge(code_verifier),
        "code_challenge_method": CHALLENGE_METHOD,
    }
