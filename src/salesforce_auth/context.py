"""Application context: composition of the auth core and its global handle.

``create_app_context`` wires every component explicitly so tests can
build isolated instances. The server lifespan registers the one it
builds with ``set_app_context`` so tool handlers can reach it.

The registered context is process-wide: every MCP session and every
HTTP request shares one token store and one session pool.
"""

from __future__ import annotations

import httpx
import msgspec

from .config import AuthConfig
from .logging_config import get_logger
from .oauth.client import SalesforceOAuthClient
from .oauth.flow import AuthorizationFlow
from .oauth.state import FlowStateTracker
from .pool import SessionPool
from .tokens.backends import create_token_backend
from .tokens.store import TokenStore

logger = get_logger("context")


class AppContext(msgspec.Struct, kw_only=True):
    """Shared components of the auth core."""

    config: AuthConfig
    http_client: httpx.AsyncClient
    token_store: TokenStore
    state_tracker: FlowStateTracker
    oauth_client: SalesforceOAuthClient
    flow: AuthorizationFlow
    pool: SessionPool

    async def aclose(self) -> None:
        """Drop sessions, stop timers and close the HTTP client."""
        await self.pool.aclose()
        self.token_store.close()
        self.state_tracker.clear()
        await self.http_client.aclose()


async def create_app_context(
    config: AuthConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    token_store: TokenStore | None = None,
) -> AppContext:
    """Build and load every component for ``config``."""
    http = http_client or httpx.AsyncClient(timeout=config.http_timeout)

    if token_store is None:
        token_store = TokenStore(
            create_token_backend(config),
            refresh_buffer=config.refresh_buffer,
            eager_eviction=config.eager_eviction,
        )
    loaded = await token_store.load()

    oauth_client = SalesforceOAuthClient(
        http,
        client_id=config.client_id,
        client_secret=config.client_secret,
        login_url=config.login_url,
    )
    tracker = FlowStateTracker(timeout=config.state_timeout)
    flow = AuthorizationFlow(config, token_store, oauth_client, http, tracker)
    pool = SessionPool(config, token_store, oauth_client, http)

    logger.info("Auth core ready: %d stored token(s)", loaded)
    return AppContext(
        config=config,
        http_client=http,
        token_store=token_store,
        state_tracker=tracker,
        oauth_client=oauth_client,
        flow=flow,
        pool=pool,
    )


_app_context: "AppContext | None" = None


def set_app_context(ctx: "AppContext | None") -> None:
    """Register (or with None, unregister) the context for global access."""
    global _app_context
    _app_context = ctx


def get_app_context() -> AppContext:
    """Get the registered context.

    Raises:
        RuntimeError: If the context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("App context not initialized")
    return _app_context
