"""Error classification for session retry decisions.

Pure predicates mapping a raw failure onto the ErrorKind taxonomy.
Callers check expired-session first, then oauth, then transient;
``classify_error`` applies that priority and returns a single kind.
"""

from __future__ import annotations

from typing import Any

import httpx

from .errors import REAUTH_GUIDANCE, ErrorKind, SalesforceAuthError

SESSION_INVALID_CODES = frozenset(
    {"INVALID_SESSION_ID", "SESSION_NOT_FOUND", "INVALID_SESSION"}
)

SESSION_EXPIRED_PHRASES = (
    "session expired",
    "invalid session",
    "authentication failure",
    "session not found",
)

OAUTH_ERROR_CODES = frozenset({"invalid_grant", "invalid_client", "access_denied"})

TRANSIENT_ERROR_CODES = frozenset(
    {
        "NETWORK_ERROR",
        "TIMEOUT",
        "SERVER_UNAVAILABLE",
        "SERVICE_UNAVAILABLE",
        "TOO_MANY_REQUESTS",
        "REQUEST_LIMIT_EXCEEDED",
    }
)

NON_RETRYABLE_CODES = frozenset({"VALIDATION_ERROR", "INVALID_LOGIN"})


def _status_code(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _error_code(error: BaseException) -> str | None:
    value: Any = getattr(error, "error_code", None) or getattr(error, "errorCode", None)
    return value if isinstance(value, str) else None


def _message(error: BaseException) -> str:
    return str(error).lower()


def _own_kind(error: BaseException) -> ErrorKind | None:
    if isinstance(error, SalesforceAuthError):
        return error.kind
    return None


def is_expired_session(error: BaseException | None) -> bool:
    """True if the failure means the session/access token is stale."""
    if error is None:
        return False

    kind = _own_kind(error)
    if kind is not None:
        return kind is ErrorKind.EXPIRED_SESSION

    if _error_code(error) in SESSION_INVALID_CODES:
        return True
    if _status_code(error) == 401:
        return True

    message = _message(error)
    return any(phrase in message for phrase in SESSION_EXPIRED_PHRASES)


def is_oauth_error(error: BaseException | None) -> bool:
    """True for provider grant/client/consent failures."""
    if error is None:
        return False

    kind = _own_kind(error)
    if kind is not None:
        return kind is ErrorKind.OAUTH

    provider_error = getattr(error, "error", None)
    if isinstance(provider_error, str) and provider_error in OAUTH_ERROR_CODES:
        return True

    message = _message(error)
    return "oauth" in message or any(code in message for code in OAUTH_ERROR_CODES)


def is_retryable_transient(error: BaseException | None) -> bool:
    """True for network errors, timeouts, 5xx and 429 responses.

    Authentication and validation failures are never transient.
    """
    if error is None:
        return False

    kind = _own_kind(error)
    if kind is not None:
        return kind is ErrorKind.TRANSIENT

    if is_expired_session(error) or is_oauth_error(error):
        return False

    code = _error_code(error)
    if code in NON_RETRYABLE_CODES or type(error).__name__ == "ValidationError":
        return False

    if isinstance(error, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    if code in TRANSIENT_ERROR_CODES:
        return True

    status = _status_code(error)
    if status is not None and (status == 429 or 500 <= status < 600):
        return True

    message = _message(error)
    return "timeout" in message or "network" in message


def classify_error(error: BaseException) -> ErrorKind:
    """Map a failure onto one ErrorKind, in expired > oauth > transient order."""
    if is_expired_session(error):
        return ErrorKind.EXPIRED_SESSION
    if is_oauth_error(error):
        return ErrorKind.OAUTH
    if is_retryable_transient(error):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


def format_error(error: BaseException) -> str:
    """Render an error for the end caller, adding re-auth guidance when needed."""
    if isinstance(error, SalesforceAuthError):
        message = error.message
        requires_reauth = error.requires_reauth
    else:
        message = f"Error: {error}"
        requires_reauth = False

    if not requires_reauth:
        requires_reauth = classify_error(error) in (
            ErrorKind.EXPIRED_SESSION,
            ErrorKind.OAUTH,
        )

    if requires_reauth:
        message += REAUTH_GUIDANCE
    return message
