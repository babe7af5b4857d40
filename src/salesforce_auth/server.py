"""MCP server exposing the Salesforce auth core.

The lifespan builds one AppContext per process and registers it so the
auth tools (and any operation handler using ``helpers.execute_with_retry``)
share the same token store, pending-state registry and session pool.
"""

from __future__ import annotations

import asyncio
import os
import signal
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator

import typer
from dotenv import load_dotenv
from fastmcp import FastMCP

from .config import AuthConfig
from .context import AppContext, create_app_context, set_app_context
from .logging_config import get_logger, mask_secret, setup_logging
from .models import AuthMode
from .tools import register_auth_tools

load_dotenv()
setup_logging()

logger = get_logger("server")

TRANSPORTS = ("stdio", "http")


@asynccontextmanager
async def app_lifespan(mcp: FastMCP) -> AsyncIterator[AppContext]:
    """Build the auth core on startup, tear it down on shutdown.

    Shutdown drops live sessions, eviction timers and pending states.
    Stored tokens are left in the backend for the next start.
    """
    config = AuthConfig.from_env()
    ctx = await create_app_context(config)
    set_app_context(ctx)
    logger.info(
        "Auth core started: mode=%s, storage=%s",
        config.default_auth_mode.value,
        config.token_storage_type,
    )

    try:
        yield ctx
    finally:
        await ctx.aclose()
        set_app_context(None)
        logger.info("Auth core stopped")


def _config_sections(
    config: AuthConfig, transport: str, port: int
) -> list[tuple[str, list[tuple[str, str]]]]:
    server_items = [("Transport", transport)]
    if transport == "http":
        server_items.append(("Port", str(port)))
    server_items.append(("Log Level", os.getenv("LOG_LEVEL", "INFO")))

    storage_items = [("Type", config.token_storage_type)]
    if config.token_storage_type == "file":
        storage_items.append(("Token File", config.token_file))
    elif config.token_storage_type == "redis":
        storage_items.append(("Redis URL", config.redis_url))
    storage_items += [
        ("Encryption", "enabled" if config.encryption_key else "disabled"),
        ("Refresh Buffer", f"{config.refresh_buffer:g}s"),
        ("Eager Eviction", "on" if config.eager_eviction else "off"),
    ]

    return [
        ("Server", server_items),
        (
            "Salesforce",
            [
                ("Login URL", config.login_url),
                ("Instance URL", config.instance_url),
                ("Connection Type", config.default_auth_mode.value),
                ("API Version", config.api_version),
            ],
        ),
        (
            "OAuth",
            [
                ("Client ID", config.client_id or "(not set)"),
                ("Client Secret", mask_secret(config.client_secret)),
                ("Redirect URI", config.redirect_uri),
                ("Scopes", config.effective_scope),
                ("Response Type", config.response_type),
                ("State Tracking", config.state_tracking),
                ("PKCE", "enabled" if config.use_pkce else "disabled"),
                ("Refresh Token", mask_secret(config.refresh_token)),
            ],
        ),
        ("Token Storage", storage_items),
    ]


def _config_warnings(config: AuthConfig) -> list[str]:
    warnings: list[str] = []
    mode = config.default_auth_mode

    if not config.client_id:
        warnings.append("SALESFORCE_CLIENT_ID is not set; OAuth flows will fail")
    if mode is AuthMode.USERNAME_PASSWORD and not (config.username and config.password):
        warnings.append(
            "SALESFORCE_USERNAME and SALESFORCE_PASSWORD are required for User_Password"
        )
    if mode is AuthMode.CLIENT_CREDENTIALS and not config.client_secret:
        warnings.append("SALESFORCE_CLIENT_SECRET is required for client credentials")
    if config.token_storage_type == "memory":
        warnings.append("TOKEN_STORAGE_TYPE=memory: stored tokens are lost on restart")
    return warnings


def log_startup_config(config: AuthConfig, transport: str, port: int) -> None:
    """Log the effective configuration with secrets masked."""
    rule = "=" * 55
    logger.info(rule)
    logger.info("  Salesforce Auth Server")
    logger.info(rule)
    for title, items in _config_sections(config, transport, port):
        logger.info("  [%s]", title)
        for key, value in items:
            logger.info("    %-20s %s", key, value)
    logger.info(rule)

    for warning in _config_warnings(config):
        logger.warning("  ! %s", warning)


def create_server() -> FastMCP:
    """Create the FastMCP server with the auth tools registered."""
    mcp = FastMCP("Salesforce Auth Server", lifespan=app_lifespan)
    register_auth_tools(mcp)
    logger.debug("Auth tools registered")
    return mcp


async def serve(transport: str, port: int) -> None:
    """Serve until the transport closes or SIGINT/SIGTERM arrives."""
    log_startup_config(AuthConfig.from_env(), transport, port)
    server = create_server()

    if transport == "http":
        task = asyncio.ensure_future(server.run_async(transport="http", port=port))
    else:
        task = asyncio.ensure_future(server.run_async(transport="stdio"))

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down", sig.name)
        task.cancel()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            # No loop signal handlers on Windows
            pass

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Server stopped")


app = typer.Typer(
    name="salesforce-auth-mcp",
    help="Salesforce OAuth flows, token storage and pooled sessions over MCP.",
    add_completion=False,
)


@app.command()
def main(
    transport: Annotated[
        str,
        typer.Option("--transport", "-t", help="MCP transport: stdio or http"),
    ] = "stdio",
    port: Annotated[
        int | None,
        typer.Option("--port", "-p", help="HTTP port (default: PORT env, then 8000)"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Overrides LOG_LEVEL"),
    ] = None,
) -> None:
    """Run the Salesforce auth MCP server."""
    if transport not in TRANSPORTS:
        raise typer.BadParameter(f"must be one of: {', '.join(TRANSPORTS)}", param_hint="--transport")
    if log_level:
        setup_logging(log_level)

    http_port = port or int(os.getenv("PORT") or os.getenv("FASTMCP_PORT") or "8000")
    try:
        asyncio.run(serve(transport, http_port))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    app()
