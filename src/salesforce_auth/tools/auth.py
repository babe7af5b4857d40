"""Authentication tools for the Salesforce MCP server."""

from typing import Any

from fastmcp import FastMCP

from ..context import get_app_context
from ..errors import SalesforceAuthError
from ..helpers import execute_with_retry, to_tool_error
from ..logging_config import get_logger
from ..models import AuthMode, AuthorizationResult
from ..oauth.metadata import build_discovery_document
from ..session import SalesforceSession

logger = get_logger("tools.auth")


def _result_summary(result: AuthorizationResult) -> dict[str, Any]:
    token = result.token
    return {
        "user_id": result.owner_id,
        "username": result.identity.username,
        "display_name": result.identity.display_name,
        "organization_id": result.identity.organization_id,
        "instance_url": token.instance_url,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "can_refresh": token.can_refresh,
    }


def register_auth_tools(mcp: FastMCP) -> None:
    """Register authorization and token lifecycle tools with the MCP server."""

    @mcp.tool()
    async def salesforce_oauth_metadata() -> dict[str, Any]:
        """Return OAuth 2.0 Authorization Server Metadata for Salesforce.

        Use salesforce_authorization_url to start a flow, then pass the full
        redirect URL the user lands on to salesforce_complete_authorization.
        """
        return build_discovery_document(get_app_context().config)

    @mcp.tool()
    async def salesforce_authorization_url(
        user_hint: str | None = None,
        scope: str | None = None,
        prompt: str | None = None,
    ) -> dict[str, Any]:
        """Start a personal OAuth flow.

        Args:
            user_hint: Optional placeholder for who is authorizing; the real
                user id is taken from Salesforce after authorization
            scope: Space-separated scopes (default: "id api refresh_token")
            prompt: Optional Salesforce prompt value (e.g. "login consent")

        Returns:
            The authorization URL to open in a browser and its state value.
            The state expires after 10 minutes.
        """
        try:
            request = get_app_context().flow.authorization_url(
                user_hint, scope=scope, prompt=prompt
            )
        except SalesforceAuthError as e:
            raise to_tool_error(e) from e
        return {"authorization_url": request.url, "state": request.state}

    @mcp.tool()
    async def salesforce_complete_authorization(redirect_url: str) -> dict[str, Any]:
        """Finish a personal OAuth flow.

        Args:
            redirect_url: The full URL the browser was redirected to after
                authorizing, including its query string or #fragment

        Returns:
            The resolved user and non-secret token details
        """
        try:
            result = await get_app_context().flow.complete_from_redirect(redirect_url)
        except SalesforceAuthError as e:
            raise to_tool_error(e) from e
        return _result_summary(result)

    @mcp.tool()
    async def salesforce_refresh_token(user_id: str | None = None) -> dict[str, Any]:
        """Refresh the stored access token for a user.

        Args:
            user_id: User id returned by salesforce_complete_authorization
                (default: the pre-provisioned default user)
        """
        ctx = get_app_context()
        try:
            record = await ctx.pool.refresh_token(user_id)
        except SalesforceAuthError as e:
            raise to_tool_error(e) from e
        ctx.pool.clear_session(record.owner_id)
        return {
            "user_id": record.owner_id,
            "instance_url": record.instance_url,
            "scope": record.scope,
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        }

    @mcp.tool()
    async def salesforce_revoke_token(user_id: str) -> dict[str, Any]:
        """Revoke a user's tokens and forget them locally.

        The local record is cleared even if Salesforce cannot be reached.
        """
        ctx = get_app_context()
        revoked = await ctx.flow.revoke(user_id)
        ctx.pool.clear_session(user_id)
        return {"user_id": user_id, "revoked_remotely": revoked, "cleared": True}

    @mcp.tool()
    async def salesforce_token_status(user_id: str) -> dict[str, Any]:
        """Show whether a user has stored tokens, without revealing them."""
        return get_app_context().flow.token_status(user_id)

    @mcp.tool()
    async def salesforce_whoami(
        user_id: str | None = None,
        auth_mode: AuthMode | None = None,
    ) -> dict[str, Any]:
        """Identify the Salesforce user a session acts as.

        Args:
            user_id: Stored user id (default: the default user)
            auth_mode: Connection type (default: SALESFORCE_CONNECTION_TYPE)
        """

        async def _identity(session: SalesforceSession) -> dict[str, Any]:
            identity = await session.identity()
            return {
                "user_id": identity.subject_id,
                "username": identity.username,
                "email": identity.email,
                "organization_id": identity.organization_id,
                "display_name": identity.display_name,
                "instance_url": session.endpoint,
            }

        try:
            return await execute_with_retry(_identity, user_id, auth_mode=auth_mode)
        except SalesforceAuthError as e:
            raise to_tool_error(e) from e

    @mcp.tool()
    async def salesforce_connection_stats() -> dict[str, Any]:
        """Report active sessions, in-flight builds and stored users."""
        ctx = get_app_context()
        return {
            **ctx.pool.stats(),
            "pending_authorizations": len(ctx.state_tracker),
            "stored_users": sorted(ctx.token_store.list_owners()),
        }
