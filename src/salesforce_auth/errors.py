"""Exception hierarchy for credential lifecycle failures.

Every error raised by the auth core derives from SalesforceAuthError and
carries a stable ``code`` plus a ``kind`` the classifier can switch on.
Raw REST failures from an established session are SalesforceApiError;
those carry no fixed kind and are classified from their status code,
Salesforce error code and message.
"""

from __future__ import annotations

from enum import Enum

REAUTH_GUIDANCE = (
    "\n\nTo re-authenticate:\n"
    "1. Update your connection configuration\n"
    "2. For personal OAuth, restart the authorization flow\n"
    "3. For client credentials, verify your client ID and secret"
)


class ErrorKind(str, Enum):
    """Failure taxonomy used by the session pool."""

    EXPIRED_SESSION = "expired_session"
    OAUTH = "oauth"
    TRANSIENT = "transient"
    FATAL = "fatal"


class SalesforceAuthError(Exception):
    """Base class for all auth core errors."""

    code: str = "AUTH_ERROR"
    kind: ErrorKind | None = ErrorKind.FATAL
    requires_reauth: bool = False

    def __init__(self, message: str, *, requires_reauth: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if requires_reauth is not None:
            self.requires_reauth = requires_reauth


class InvalidStateParameter(SalesforceAuthError):
    """Callback state was never issued or was already consumed."""

    code = "INVALID_STATE"
    kind = ErrorKind.OAUTH


class StateExpired(SalesforceAuthError):
    """Callback state matched an authorization attempt that timed out."""

    code = "STATE_EXPIRED"
    kind = ErrorKind.OAUTH
    requires_reauth = True


class OAuthAuthorizationFailed(SalesforceAuthError):
    """The provider denied or errored the authorization request."""

    code = "OAUTH_AUTHORIZATION_FAILED"
    kind = ErrorKind.OAUTH
    requires_reauth = True

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description


class TokenRequestFailed(SalesforceAuthError):
    """The token endpoint rejected a grant."""

    code = "TOKEN_REQUEST_FAILED"
    kind = ErrorKind.OAUTH
    requires_reauth = True

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        error_description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.status_code = status_code


class CodeExchangeFailed(TokenRequestFailed):
    """Authorization code could not be exchanged for tokens."""

    code = "CODE_EXCHANGE_FAILED"


class TokenRefreshFailed(TokenRequestFailed):
    """Refresh token grant failed; the stored record is no longer usable."""

    code = "TOKEN_REFRESH_FAILED"


class SessionExpired(SalesforceAuthError):
    """Session is stale and cannot be renewed without re-authorization."""

    code = "SESSION_EXPIRED"
    kind = ErrorKind.EXPIRED_SESSION
    requires_reauth = True


class MissingCredentials(SalesforceAuthError):
    """Required client id, secret, password or refresh token is not configured."""

    code = "MISSING_CREDENTIALS"
    kind = ErrorKind.FATAL
    requires_reauth = True


class NetworkError(SalesforceAuthError):
    """Transport-level failure talking to Salesforce."""

    code = "NETWORK_ERROR"
    kind = ErrorKind.TRANSIENT


class IdentityResolutionFailed(SalesforceAuthError):
    """User identity could not be fetched with a fresh access token."""

    code = "USER_INFO_FAILED"
    kind = ErrorKind.FATAL


class SalesforceApiError(SalesforceAuthError):
    """Non-2xx response from the Salesforce REST or identity API."""

    code = "API_ERROR"
    kind = None

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

