"""Tests for the app context, collaborator helpers and the MCP tool surface."""

import asyncio
import os
from unittest.mock import patch

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from salesforce_auth.context import create_app_context, get_app_context, set_app_context
from salesforce_auth.errors import REAUTH_GUIDANCE, TokenRefreshFailed
from salesforce_auth.helpers import execute_with_retry, to_tool_error
from salesforce_auth.models import AuthMode
from salesforce_auth.server import create_server
from salesforce_auth.tokens import TokenStore

MEMORY_ENV = {
    "SALESFORCE_CLIENT_ID": "abc",
    "SALESFORCE_CLIENT_SECRET": "shh-secret",
    "SALESFORCE_REDIRECT_URI": "https://example.com/cb",
    "SALESFORCE_CONNECTION_TYPE": "OAuth_2.0_Personal",
    "TOKEN_STORAGE_TYPE": "memory",
}


class TestAppContext:
    """Tests for composing and registering the auth core."""

    @pytest.mark.asyncio
    async def test_get_without_context(self):
        set_app_context(None)

        with pytest.raises(RuntimeError, match="not initialized"):
            get_app_context()

    @pytest.mark.asyncio
    async def test_registered_context_is_shared_across_tasks(self, config, http_client):
        ctx = await create_app_context(config, http_client=http_client, token_store=TokenStore())
        async def from_task():
            return get_app_context()

        set_app_context(ctx)
        try:
            seen = await asyncio.gather(from_task(), asyncio.to_thread(get_app_context))
        finally:
            await ctx.aclose()
            set_app_context(None)

        assert all(c is ctx for c in seen)

    @pytest.mark.asyncio
    async def test_helpers_route_through_registered_pool(self, config, http_client, salesforce):
        ctx = await create_app_context(config, http_client=http_client, token_store=TokenStore())
        set_app_context(ctx)
        try:
            result = await execute_with_retry(
                lambda session: session.request("GET", "limits"),
                auth_mode=AuthMode.CLIENT_CREDENTIALS,
            )
        finally:
            await ctx.aclose()
            set_app_context(None)

        assert result == {"ok": True}
        assert salesforce.requests[-1].headers["Authorization"] == "Bearer 00D!access-1"

    def test_to_tool_error_appends_guidance(self):
        error = to_tool_error(TokenRefreshFailed("Token refresh failed: invalid_grant"))

        assert isinstance(error, ToolError)
        assert str(error).endswith(REAUTH_GUIDANCE)


class TestTools:
    """Tests for the registered MCP tools over an in-memory client."""

    @pytest.mark.asyncio
    async def test_tools_registered(self):
        with patch.dict(os.environ, MEMORY_ENV, clear=True):
            async with Client(create_server()) as client:
                tools = {tool.name for tool in await client.list_tools()}

        assert tools == {
            "salesforce_oauth_metadata",
            "salesforce_authorization_url",
            "salesforce_complete_authorization",
            "salesforce_refresh_token",
            "salesforce_revoke_token",
            "salesforce_token_status",
            "salesforce_whoami",
            "salesforce_connection_stats",
        }

    @pytest.mark.asyncio
    async def test_authorization_url_and_stats(self):
        with patch.dict(os.environ, MEMORY_ENV, clear=True):
            async with Client(create_server()) as client:
                result = await client.call_tool("salesforce_authorization_url", {"user_hint": "jane"})
                stats = await client.call_tool("salesforce_connection_stats", {})

        assert "client_id=abc" in result.data["authorization_url"]
        assert len(result.data["state"]) == 64
        assert stats.data["pending_authorizations"] == 1
        assert stats.data["active_sessions"] == 0

    @pytest.mark.asyncio
    async def test_metadata_and_token_status(self):
        with patch.dict(os.environ, MEMORY_ENV, clear=True):
            async with Client(create_server()) as client:
                metadata = await client.call_tool("salesforce_oauth_metadata", {})
                status = await client.call_tool("salesforce_token_status", {"user_id": "nobody"})

        assert metadata.data["client_id"] == "abc"
        assert status.data == {"has_tokens": False}

    @pytest.mark.asyncio
    async def test_bad_state_surfaces_tool_error(self):
        with patch.dict(os.environ, MEMORY_ENV, clear=True):
            async with Client(create_server()) as client:
                with pytest.raises(ToolError, match="Invalid or expired state"):
                    await client.call_tool(
                        "salesforce_complete_authorization",
                        {"redirect_url": "https://example.com/cb?code=C1&state=S1"},
                    )

    @pytest.mark.asyncio
    async def test_refresh_without_credentials_asks_for_reauth(self):
        with patch.dict(os.environ, MEMORY_ENV, clear=True):
            async with Client(create_server()) as client:
                with pytest.raises(ToolError, match="re-authenticate"):
                    await client.call_tool("salesforce_refresh_token", {"user_id": "nobody"})


class TestStartupConfig:
    """Tests for the startup configuration report."""

    def test_secrets_are_masked(self, config):
        from salesforce_auth.server import _config_sections

        sections = dict(_config_sections(config, "stdio", 8000))
        oauth = dict(sections["OAuth"])

        assert oauth["Client Secret"] == "shh-****cret"
        assert "shh-secret" not in repr(sections)

    def test_warnings(self):
        from salesforce_auth.config import AuthConfig
        from salesforce_auth.server import _config_warnings

        warnings = _config_warnings(AuthConfig(token_storage_type="memory"))

        assert any("SALESFORCE_CLIENT_ID" in w for w in warnings)
        assert any("SALESFORCE_USERNAME" in w for w in warnings)
        assert any("memory" in w for w in warnings)
