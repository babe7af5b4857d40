"""OAuth discovery document for external OAuth-aware callers."""

from __future__ import annotations

from typing import Any

from ..config import AuthConfig
from .pkce import CHALLENGE_METHOD

SCOPES_SUPPORTED = ["id", "api", "refresh_token", "web", "full"]


def build_discovery_document(config: AuthConfig) -> dict[str, Any]:
    """Authorization server metadata pointing at Salesforce's endpoints."""
    base = config.login_url.rstrip("/")
    return {
        "issuer": base,
        "authorization_endpoint": f"{base}/services/oauth2/authorize",
        "token_endpoint": f"{base}/services/oauth2/token",
        "revocation_endpoint": f"{base}/services/oauth2/revoke",
        "scopes_supported": list(SCOPES_SUPPORTED),
        "response_types_supported": ["code", "token"],
        "grant_types_supported": [
            "authorization_code",
            "implicit",
            "refresh_token",
            "client_credentials",
        ],
        "code_challenge_methods_supported": [CHALLENGE_METHOD],
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": config.response_type,
        "scope": config.effective_scope,
    }
