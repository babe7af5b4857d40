"""MCP tools exposed by the Salesforce auth server."""

from .auth import register_auth_tools

__all__ = ["register_auth_tools"]
