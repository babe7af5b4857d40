"""OAuth module for Salesforce personal authentication.

Components:
    - SalesforceOAuthClient: Token endpoint client (code exchange, refresh,
      client credentials, password, revoke)
    - FlowStateTracker: Single-use anti-forgery state registry
    - AuthorizationFlow: Authorization URL building and callback handling
    - fetch_user_identity: Userinfo lookup used to key stored tokens
    - build_discovery_document: OAuth metadata for external callers
    - PKCE utilities: generate_pkce_pair, verify_pkce, compute_challenge
"""

from .client import SalesforceOAuthClient
from .flow import AuthorizationFlow, parse_redirect_params
from .identity import fetch_user_identity
from .metadata import build_discovery_document
from .pkce import compute_challenge, generate_pkce_pair, verify_pkce
from .state import FlowStateTracker

__all__ = [
    # Token endpoint
    "SalesforceOAuthClient",
    # Flow orchestration
    "AuthorizationFlow",
    "FlowStateTracker",
    "parse_redirect_params",
    # Identity
    "fetch_user_identity",
    # Discovery
    "build_discovery_document",
    # PKCE utilities
    "generate_pkce_pair",
    "verify_pkce",
    "compute_challenge",
]
