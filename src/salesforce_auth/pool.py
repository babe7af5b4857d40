"""Session pool with per-key single-flight construction and bounded retry.

Sessions are cached per (owner_id, auth_mode). At most one session and
at most one in-flight build exist per key; concurrent callers for the
same key await the same build instead of each logging in. Failures are
classified and only an expired session is retried, exactly once by
default, after the stale session is evicted and its token refreshed.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from .classifier import classify_error, is_expired_session
from .config import AuthConfig
from .errors import (
    ErrorKind,
    MissingCredentials,
    SalesforceAuthError,
    SessionExpired,
    TokenRefreshFailed,
)
from .logging_config import get_logger
from .models import DEFAULT_OWNER_ID, AuthMode, AuthParams, TokenRecord
from .oauth.client import SalesforceOAuthClient
from .session import SalesforceSession
from .tokens.store import TokenStore

logger = get_logger("pool")

T = TypeVar("T")
SessionKey = tuple[str, AuthMode]
Operation = Callable[[SalesforceSession], Awaitable[T]]


class SessionPool:
    """Owns live Salesforce sessions for many owners.

    Example:
        >>> pool = SessionPool(config, token_store, oauth_client, http_client)
        >>> result = await pool.execute_with_retry(
        ...     lambda s: s.request("GET", "sobjects"), owner_id="jane@example.com"
        ... )
    """

    def __init__(
        self,
        config: AuthConfig,
        token_store: TokenStore,
        oauth_client: SalesforceOAuthClient,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._config = config
        self._store = token_store
        self._oauth = oauth_client
        self._http = http_client
        self._sessions: dict[SessionKey, SalesforceSession] = {}
        self._building: dict[SessionKey, asyncio.Future[SalesforceSession]] = {}
        self._refreshing: dict[str, asyncio.Future[TokenRecord]] = {}
        # Access tokens replaced by a refresh, per owner
        self._superseded: dict[str, set[str]] = {}

    def _key(self, owner_id: str | None, auth_mode: AuthMode | None) -> SessionKey:
        return (owner_id or DEFAULT_OWNER_ID, auth_mode or self._config.default_auth_mode)

    async def _single_flight(
        self,
        registry: dict[Any, asyncio.Future[T]],
        key: Any,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        future = registry.get(key)
        if future is None:
            future = asyncio.ensure_future(factory())
            registry[key] = future

            def _done(f: asyncio.Future[T]) -> None:
                if registry.get(key) is f:
                    del registry[key]
                # Mark the exception retrieved when every waiter was cancelled
                if not f.cancelled():
                    f.exception()

            future.add_done_callback(_done)
        # Shielded so one cancelled waiter does not cancel the shared build
        return await asyncio.shield(future)

    async def get_session(
        self,
        owner_id: str | None = None,
        auth_mode: AuthMode | None = None,
        auth_params: AuthParams | None = None,
    ) -> SalesforceSession:
        """Return the cached session for the key, building one if needed.

        Raises:
            MissingCredentials: Required configuration is absent
            SessionExpired: Stored credentials cannot be renewed
            TokenRequestFailed: The provider rejected the login or refresh
            NetworkError: Transport failure
        """
        key = self._key(owner_id, auth_mode)

        session = self._sessions.get(key)
        if session is not None:
            if await self._is_session_valid(session):
                return session
            logger.info("Cached session invalid for %s/%s, rebuilding", *_fmt(key))
            if self._sessions.get(key) is session:
                del self._sessions[key]

        return await self._single_flight(
            self._building, key, lambda: self._create(key, auth_params)
        )

    async def execute_with_retry(
        self,
        operation: Operation[T],
        owner_id: str | None = None,
        auth_mode: AuthMode | None = None,
        auth_params: AuthParams | None = None,
        max_retries: int = 1,
    ) -> T:
        """Run ``operation(session)``, retrying once on an expired session.

        Any other failure, or an expired session with no retries left,
        propagates unchanged.
        """
        attempt = 0
        while True:
            session = await self.get_session(owner_id, auth_mode, auth_params)
            try:
                return await operation(session)
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.EXPIRED_SESSION and attempt < max_retries:
                    attempt += 1
                    logger.warning(
                        "Attempt %d failed with expired session for %s/%s, refreshing",
                        attempt,
                        *_fmt(self._key(owner_id, auth_mode)),
                    )
                    await self.refresh_session(
                        owner_id, auth_mode, auth_params, stale=session
                    )
                    continue
                logger.debug("Operation failed (%s), not retrying: %s", kind.value, e)
                raise

    async def refresh_session(
        self,
        owner_id: str | None = None,
        auth_mode: AuthMode | None = None,
        auth_params: AuthParams | None = None,
        *,
        stale: SalesforceSession | None = None,
    ) -> SalesforceSession:
        """Evict the session for the key and build a fresh one.

        The underlying token is refreshed first when the stale session has
        a refresh hook. Token-bound modes without one clear the stored
        record and raise SessionExpired instead of reusing it.
        """
        key = self._key(owner_id, auth_mode)
        owner, mode = key

        if stale is None:
            stale = self._sessions.get(key)
        if stale is not None and self._sessions.get(key) is stale:
            del self._sessions[key]

        if stale is not None and stale.can_refresh:
            await stale.refresh()
        elif mode in (AuthMode.PERSONAL, AuthMode.ACCESS_TOKEN) and not self._refresh_token_for(
            owner, auth_params
        ):
            await self._store.clear(owner)
            raise SessionExpired(
                f"Session expired for user {owner} and no refresh token is "
                "available. Please re-authenticate."
            )

        return await self.get_session(owner, mode, auth_params)

    async def refresh_token(self, owner_id: str | None = None) -> TokenRecord:
        """Refresh the stored record for ``owner_id`` and store the result.

        Concurrent refreshes for the same owner share one token request.

        Raises:
            MissingCredentials: No refresh token or client credentials
            SessionExpired: A stored record exists but cannot be renewed
            TokenRefreshFailed: Provider rejected the refresh token; the
                stale record is evicted
        """
        owner = owner_id or DEFAULT_OWNER_ID
        return await self._single_flight(
            self._refreshing, owner, lambda: self._refresh_owner(owner)
        )

    async def _refresh_owner(self, owner: str) -> TokenRecord:
        record = self._store.peek(owner)
        refresh_token = self._refresh_token_for(owner)

        if not refresh_token:
            if record is not None:
                raise SessionExpired(
                    f"No refresh token available for user: {owner}. "
                    "Please re-authenticate."
                )
            raise MissingCredentials(
                f"No stored credentials for user: {owner}. "
                "Run the authorization flow first."
            )

        try:
            new_record = await self._oauth.refresh(
                refresh_token,
                login_url=self._config.login_url,
                owner_id=owner,
            )
        except TokenRefreshFailed:
            logger.error("Token refresh failed for %s, evicting stored record", owner)
            await self._store.clear(owner)
            self._superseded.pop(owner, None)
            self.clear_session(owner)
            raise

        stored = await self._store.put(owner, new_record)
        if record is not None and record.access_token != stored.access_token:
            self._superseded.setdefault(owner, set()).add(record.access_token)
        return stored

    def _refresh_token_for(self, owner: str, auth_params: AuthParams | None = None) -> str | None:
        record = self._store.peek(owner)
        if record is not None and record.refresh_token:
            return record.refresh_token
        if auth_params is not None and auth_params.refresh_token:
            return auth_params.refresh_token
        if owner == DEFAULT_OWNER_ID:
            return self._config.refresh_token
        return None

    async def _is_session_valid(self, session: SalesforceSession) -> bool:
        if not self._config.validate_sessions:
            return True
        try:
            await session.probe()
        except SalesforceAuthError as e:
            if is_expired_session(e):
                return False
            # Other failures say nothing about the token; keep the session
            logger.debug("Session probe failed with non-auth error: %s", e)
        return True

    async def _create(
        self, key: SessionKey, auth_params: AuthParams | None
    ) -> SalesforceSession:
        session = await self._build_session(key[0], key[1], auth_params)
        self._sessions[key] = session
        logger.info("Session established for %s/%s", *_fmt(key))
        return session

    async def _build_session(
        self,
        owner: str,
        mode: AuthMode,
        auth_params: AuthParams | None,
    ) -> SalesforceSession:
        if mode is AuthMode.PERSONAL:
            return await self._build_personal(owner)
        if mode is AuthMode.ACCESS_TOKEN:
            return await self._build_access_token(owner, auth_params)
        if mode is AuthMode.CLIENT_CREDENTIALS:
            return await self._build_client_credentials(owner)
        return await self._build_username_password(owner)

    def _session(self, record: TokenRecord, owner: str, refreshable: bool) -> SalesforceSession:
        hook = (lambda: self.refresh_token(owner)) if refreshable else None
        return SalesforceSession.from_record(
            record,
            http_client=self._http,
            api_version=self._config.api_version,
            refresh_hook=hook,
        )

    async def _build_username_password(self, owner: str) -> SalesforceSession:
        config = self._config
        if not config.username or not config.password:
            raise MissingCredentials(
                "SALESFORCE_USERNAME and SALESFORCE_PASSWORD are required for "
                "Username/Password authentication"
            )
        logger.info("Creating Username/Password session...")
        record = await self._oauth.password(
            config.username,
            config.password + (config.security_token or ""),
            login_url=config.login_url,
        )
        return self._session(record, owner, refreshable=False)

    async def _build_client_credentials(self, owner: str) -> SalesforceSession:
        self._config.require_client_credentials()
        logger.info("Creating OAuth 2.0 Client Credentials session...")
        record = await self._oauth.client_credentials(login_url=self._config.instance_url)
        return self._session(record, owner, refreshable=False)

    async def _build_personal(self, owner: str) -> SalesforceSession:
        record = await self._store.get(owner)
        if record is None:
            record = await self.refresh_token(owner)
        return self._session(record, owner, refreshable=bool(self._refresh_token_for(owner)))

    async def _build_access_token(
        self, owner: str, auth_params: AuthParams | None
    ) -> SalesforceSession:
        if auth_params is None or not auth_params.access_token:
            # Fall back to whatever a previous pass-through left in the store
            stored = await self._store.get(owner)
            if stored is None:
                raise MissingCredentials(
                    "An access token is required for token-based authentication"
                )
            return self._session(stored, owner, refreshable=stored.can_refresh)

        superseded = self._superseded.get(owner, set())
        if auth_params.access_token in superseded and self._store.peek(owner) is not None:
            # The caller still holds a token this pool refreshed away; the
            # stored record (and any rotated refresh token) is newer
            record = await self._store.get(owner) or await self.refresh_token(owner)
        else:
            self._superseded.pop(owner, None)
            record = await self._store.put(
                owner,
                TokenRecord(
                    access_token=auth_params.access_token,
                    refresh_token=auth_params.refresh_token,
                    instance_url=(
                        auth_params.instance_url or self._config.instance_url
                    ).rstrip("/"),
                    scope=auth_params.scope,
                    owner_id=owner,
                ),
            )
        logger.info("Creating token-based session for user: %s", owner)
        return self._session(record, owner, refreshable=record.can_refresh)

    def clear_session(self, owner_id: str | None = None, auth_mode: AuthMode | None = None) -> int:
        """Drop cached sessions for an owner (one mode, or all when None)."""
        owner = owner_id or DEFAULT_OWNER_ID
        keys = [
            k for k in list(self._sessions)
            if k[0] == owner and (auth_mode is None or k[1] is auth_mode)
        ]
        for key in keys:
            del self._sessions[key]
        if keys:
            logger.info("Cleared %d session(s) for user: %s", len(keys), owner)
        return len(keys)

    async def clear_all(self) -> None:
        """Drop every cached session and cancel in-flight builds."""
        for future in list(self._building.values()) + list(self._refreshing.values()):
            future.cancel()
        self._building.clear()
        self._refreshing.clear()
        self._sessions.clear()
        logger.info("All sessions cleared")

    async def aclose(self) -> None:
        """Release pool state on shutdown. Stored tokens are kept."""
        await self.clear_all()

    def stats(self) -> dict[str, int]:
        return {
            "active_sessions": len(self._sessions),
            "pending_builds": len(self._building),
            "stored_tokens": len(self._store),
        }


def _fmt(key: SessionKey) -> tuple[str, str]:
    return key[0], key[1].value
