"""Logging configuration for the Salesforce auth server.

All loggers live under the ``salesforce_auth`` namespace. Output goes to
stderr because stdout carries the MCP stdio transport.
"""

from __future__ import annotations

import logging
import os
import sys

ROOT_LOGGER_NAME = "salesforce_auth"

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure the package logger.

    Args:
        level: Log level name. Falls back to LOG_LEVEL env, then INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level_name)

    if not any(getattr(h, "_salesforce_auth", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._salesforce_auth = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Get a component logger, e.g. ``get_logger("oauth.flow")``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def token_preview(token: str | None, length: int = 10) -> str:
    """Short, non-reversible preview of a secret for log lines."""
    if not token:
        return "(none)"
    if len(token) <= length:
        return "****"
    return token[:length] + "..."


def mask_secret(value: str | None) -> str:
    """Mask sensitive values for display."""
    if not value:
        return "(not set)"
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]
