"""Collaborator-facing helpers.

Operation handlers never touch tokens or sessions directly; they hand an
operation to ``execute_with_retry`` and get its result back.

Usage:
    from .helpers import execute_with_retry

    @mcp.tool()
    async def salesforce_describe(sobject: str, user_id: str | None = None) -> dict:
        return await execute_with_retry(
            lambda session: session.request("GET", f"sobjects/{sobject}/describe"),
            owner_id=user_id,
        )
"""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from fastmcp.exceptions import ToolError

from .classifier import format_error
from .context import get_app_context
from .errors import SalesforceAuthError
from .logging_config import get_logger
from .models import AuthMode, AuthParams
from .session import SalesforceSession

logger = get_logger("helpers")

T = TypeVar("T")


async def execute_with_retry(
    operation: Callable[[SalesforceSession], Awaitable[T]],
    owner_id: str | None = None,
    *,
    auth_mode: AuthMode | None = None,
    auth_params: AuthParams | None = None,
) -> T:
    """Run ``operation`` with a usable session for ``owner_id``.

    Raises:
        SalesforceAuthError: Classified failure from session setup or the
            operation
        RuntimeError: If the app context is not initialized
    """
    pool = get_app_context().pool
    return await pool.execute_with_retry(
        operation,
        owner_id=owner_id,
        auth_mode=auth_mode,
        auth_params=auth_params,
    )


def to_tool_error(error: SalesforceAuthError) -> ToolError:
    """Convert an auth failure into a ToolError with re-auth guidance."""
    logger.error("Tool failed: code=%s, %s", error.code, error.message)
    return ToolError(format_error(error))
