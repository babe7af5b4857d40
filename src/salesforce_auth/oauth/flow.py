"""Authorization flow orchestration for personal Salesforce OAuth.

Drives one authorization attempt from URL to stored token:

    INITIATED          authorization URL issued, state pending
    CALLBACK_RECEIVED  provider redirected back with a code or a token
    COMPLETED          token stored under the resolved user identity
    FAILED             provider error, bad/expired state, exchange or
                       identity failure

The owner hint given when the URL is issued is only a placeholder; the
token store key is always derived from the identity Salesforce reports
for the new token.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit

import httpx

from ..config import AuthConfig
from ..errors import (
    IdentityResolutionFailed,
    InvalidStateParameter,
    MissingCredentials,
    NetworkError,
    OAuthAuthorizationFailed,
    SalesforceAuthError,
    StateExpired,
)
from ..logging_config import get_logger
from ..models import (
    DEFAULT_OWNER_ID,
    AuthorizationRequest,
    AuthorizationResult,
    PendingAuthorization,
    TokenRecord,
)
from ..tokens.store import TokenStore
from .client import SalesforceOAuthClient, expires_at_from, utc_now
from .identity import fetch_user_identity
from .pkce import challenge_params, generate_pkce_pair
from .state import FlowStateTracker

logger = get_logger("oauth.flow")


def parse_redirect_params(redirect_url: str) -> dict[str, str]:
    """Collect OAuth parameters from both the query string and the fragment.

    Fragment values win, since the implicit flow delivers tokens there.
    """
    parts = urlsplit(redirect_url.strip())
    params: dict[str, str] = {}
    for source in (parts.query, parts.fragment):
        for key, value in parse_qsl(source, keep_blank_values=False):
            params[key] = value
    return params


class AuthorizationFlow:
    """Authorization-code and implicit flow handler.

    State tracking is server-side by default: every URL gets a fresh
    random state that must come back exactly once. With
    ``state_tracking="client"`` the caller's own state is passed through
    and callbacks are not matched.
    """

    def __init__(
        self,
        config: AuthConfig,
        token_store: TokenStore,
        oauth_client: SalesforceOAuthClient,
        http_client: httpx.AsyncClient,
        state_tracker: FlowStateTracker | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = token_store
        self._oauth = oauth_client
        self._http = http_client
        self._state = state_tracker or FlowStateTracker(timeout=config.state_timeout)
        self._clock = clock

    @property
    def state_tracker(self) -> FlowStateTracker:
        return self._state

    @property
    def tracks_state(self) -> bool:
        return self._config.state_tracking == "server"

    def authorization_url(
        self,
        owner_hint: str | None = None,
        *,
        scope: str | None = None,
        prompt: str | None = None,
        state: str | None = None,
        redirect_uri: str | None = None,
        response_type: str | None = None,
    ) -> AuthorizationRequest:
        """Build the Salesforce authorization URL for a new attempt.

        Raises:
            MissingCredentials: SALESFORCE_CLIENT_ID is not configured
        """
        config = self._config
        if not config.client_id:
            raise MissingCredentials(
                "SALESFORCE_CLIENT_ID is required to start the authorization flow"
            )

        response_type = response_type or config.response_type
        code_verifier = None
        if config.use_pkce and response_type == "code" and self.tracks_state:
            code_verifier, _ = generate_pkce_pair()

        if self.tracks_state:
            state = self._state.issue(
                owner_hint or DEFAULT_OWNER_ID,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
            )

        query: dict[str, str] = {
            "response_type": response_type,
            "client_id": config.client_id,
            "redirect_uri": redirect_uri or config.redirect_uri,
            "scope": scope or config.effective_scope,
        }
        if state:
            query["state"] = state
        if prompt:
            query["prompt"] = prompt
        if code_verifier:
            query.update(challenge_params(code_verifier))

        url = f"{config.login_url.rstrip('/')}/services/oauth2/authorize?{urlencode(query)}"
        logger.info(
            "Authorization URL issued: response_type=%s, owner_hint=%s",
            response_type,
            owner_hint or DEFAULT_OWNER_ID,
        )
        return AuthorizationRequest(url=url, state=state)

    async def complete_from_redirect(self, redirect_url: str) -> AuthorizationResult:
        """Finish a flow from the full redirect URL a user pasted back."""
        params = parse_redirect_params(redirect_url)
        if not params:
            raise OAuthAuthorizationFailed(
                "Redirect URL carries no OAuth parameters in its query or fragment"
            )
        return await self.handle_callback(params)

    async def handle_callback(self, params: Mapping[str, str]) -> AuthorizationResult:
        """Validate callback parameters and complete the flow.

        Raises:
            OAuthAuthorizationFailed: Provider reported an error
            InvalidStateParameter: State missing, unknown or already used
            StateExpired: State matched an attempt older than the timeout
            CodeExchangeFailed: Token endpoint rejected the code
            IdentityResolutionFailed: Identity lookup with the new token failed
        """
        error = params.get("error")
        state = params.get("state")
        pending: PendingAuthorization | None = None

        # Consume before anything can raise so a state is never replayable
        if self.tracks_state and state:
            pending = self._state.consume(state)

        if error:
            description = params.get("error_description") or "Unknown error"
            logger.warning("Provider returned authorization error: %s", error)
            raise OAuthAuthorizationFailed(
                f"OAuth authorization failed: {error} - {description}",
                error=error,
                error_description=params.get("error_description"),
            )

        if self.tracks_state:
            if pending is None:
                raise InvalidStateParameter("Invalid or expired state parameter")
            if self._state.is_expired(pending):
                raise StateExpired(
                    "Authorization attempt expired; restart the authorization flow"
                )

        if params.get("access_token"):
            return await self._handle_implicit(params, pending)

        code = params.get("code")
        if not code:
            raise OAuthAuthorizationFailed(
                "Callback carried neither an authorization code nor an access token"
            )
        return await self._handle_code(code, pending)

    async def _handle_code(
        self, code: str, pending: PendingAuthorization | None
    ) -> AuthorizationResult:
        redirect_uri = self._config.redirect_uri
        if pending is not None and pending.redirect_uri:
            redirect_uri = pending.redirect_uri
        record = await self._oauth.exchange_code(
            code,
            redirect_uri=redirect_uri,
            login_url=self._config.login_url,
            code_verifier=pending.code_verifier if pending else None,
        )
        return await self._resolve_and_store(record, pending)

    async def _handle_implicit(
        self, params: Mapping[str, str], pending: PendingAuthorization | None
    ) -> AuthorizationResult:
        # Implicit grants carry no expiry claim unless expires_in is sent
        expires_in: Any = params.get("expires_in") or int(self._config.implicit_token_lifetime)
        record = TokenRecord(
            access_token=params["access_token"],
            refresh_token=params.get("refresh_token") or None,
            instance_url=(params.get("instance_url") or self._config.instance_url).rstrip("/"),
            scope=params.get("scope") or None,
            token_type=params.get("token_type") or "Bearer",
            expires_at=expires_at_from(expires_in, self._clock()),
        )
        return await self._resolve_and_store(record, pending)

    async def _resolve_and_store(
        self, record: TokenRecord, pending: PendingAuthorization | None
    ) -> AuthorizationResult:
        try:
            identity = await fetch_user_identity(
                self._http, record.instance_url, record.access_token
            )
        except SalesforceAuthError as e:
            raise IdentityResolutionFailed(
                f"Failed to retrieve user information from Salesforce: {e.message}"
            ) from e

        owner_id = identity.owner_key
        if not owner_id:
            raise IdentityResolutionFailed(
                "Salesforce identity response carried no usable user identifier"
            )

        if pending is not None and pending.owner_id != owner_id:
            logger.debug("Replacing owner hint %s with %s", pending.owner_id, owner_id)

        stored = await self._store.put(owner_id, record)
        logger.info(
            "OAuth callback processed successfully for user: %s (%s)",
            owner_id,
            identity.display_name,
        )
        return AuthorizationResult(owner_id=owner_id, identity=identity, token=stored)

    async def revoke(self, owner_id: str) -> bool:
        """Revoke remotely (best effort) and always clear the local record.

        Returns:
            True if Salesforce confirmed the revocation
        """
        record = self._store.peek(owner_id)
        if record is None:
            return False

        token = record.refresh_token or record.access_token
        revoked = False
        try:
            revoked = await self._oauth.revoke(token, login_url=self._config.login_url)
        except NetworkError as e:
            logger.warning("Remote revoke failed for %s: %s", owner_id, e)
        finally:
            await self._store.clear(owner_id)
        return revoked

    async def has_valid_tokens(self, owner_id: str) -> bool:
        return await self._store.get(owner_id) is not None

    def token_status(self, owner_id: str) -> dict[str, Any]:
        """Non-secret view of the stored record for ``owner_id``."""
        record = self._store.peek(owner_id)
        if record is None:
            return {"has_tokens": False}
        return {
            "has_tokens": True,
            "instance_url": record.instance_url,
            "scope": record.scope,
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            "is_expired": self._store.is_expired(record),
            "can_refresh": record.can_refresh,
        }
