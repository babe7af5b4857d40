"""Salesforce token endpoint client.

Each call is a single form-encoded POST with no retries of its own;
retrying is the session pool's job. The client keeps only its
configuration and the shared HTTP client, never token state.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx
import msgspec

from ..config import DEFAULT_LOGIN_URL
from ..errors import (
    CodeExchangeFailed,
    MissingCredentials,
    NetworkError,
    TokenRefreshFailed,
    TokenRequestFailed,
)
from ..logging_config import get_logger, token_preview
from ..models import TokenRecord

logger = get_logger("oauth.client")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenResponse(msgspec.Struct, kw_only=True):
    """Successful token endpoint payload."""

    access_token: str
    instance_url: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None
    expires_in: int | str | None = None
    id: str | None = None
    issued_at: str | None = None


class TokenErrorResponse(msgspec.Struct, kw_only=True):
    """OAuth error payload."""

    error: str = "unknown_error"
    error_description: str | None = None


def expires_at_from(expires_in: int | str | None, now: datetime) -> datetime | None:
    """Absolute expiry for an ``expires_in`` seconds value; None if absent."""
    if expires_in is None or expires_in == "":
        return None
    return now + timedelta(seconds=int(expires_in))


class SalesforceOAuthClient:
    """Talks to ``/services/oauth2/token`` and ``/services/oauth2/revoke``.

    Example:
        >>> client = SalesforceOAuthClient(http, client_id="...", client_secret="...")
        >>> record = await client.refresh(stored.refresh_token)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        login_url: str = DEFAULT_LOGIN_URL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._http = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.login_url = login_url.rstrip("/")
        self._clock = clock

    def _token_url(self, login_url: str | None) -> str:
        return f"{(login_url or self.login_url).rstrip('/')}/services/oauth2/token"

    def _revoke_url(self, login_url: str | None) -> str:
        return f"{(login_url or self.login_url).rstrip('/')}/services/oauth2/revoke"

    def _client_form(self, *, secret_required: bool) -> dict[str, str]:
        if not self.client_id:
            raise MissingCredentials("SALESFORCE_CLIENT_ID is required for OAuth requests")
        form = {"client_id": self.client_id}
        if self.client_secret:
            form["client_secret"] = self.client_secret
        elif secret_required:
            raise MissingCredentials(
                "SALESFORCE_CLIENT_ID and SALESFORCE_CLIENT_SECRET are required "
                "for this grant"
            )
        return form

    async def _post_token(
        self,
        form: dict[str, str],
        *,
        login_url: str | None,
        error_cls: type[TokenRequestFailed],
        action: str,
    ) -> TokenResponse:
        url = self._token_url(login_url)
        logger.debug("POST %s grant_type=%s", url, form.get("grant_type"))

        try:
            response = await self._http.post(
                url, data=form, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.error("%s network error: %s", action, e)
            raise NetworkError(f"Token request error: {e}") from e

        if not response.is_success:
            try:
                err = msgspec.json.decode(response.content, type=TokenErrorResponse)
            except msgspec.DecodeError:
                err = TokenErrorResponse(
                    error=f"http_{response.status_code}",
                    error_description=response.text[:200] or None,
                )
            logger.warning(
                "%s rejected: status=%d, error=%s",
                action,
                response.status_code,
                err.error,
            )
            raise error_cls(
                f"{action} failed: {err.error} - {err.error_description or 'Unknown error'}",
                error=err.error,
                error_description=err.error_description,
                status_code=response.status_code,
            )

        try:
            return msgspec.json.decode(response.content, type=TokenResponse)
        except msgspec.DecodeError as e:
            raise error_cls(
                f"Failed to parse token response: {e}",
                status_code=response.status_code,
            ) from e

    def _to_record(
        self,
        payload: TokenResponse,
        *,
        fallback_instance_url: str,
        refresh_token: str | None = None,
        owner_id: str = "",
    ) -> TokenRecord:
        return TokenRecord(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token or refresh_token,
            instance_url=(payload.instance_url or fallback_instance_url).rstrip("/"),
            scope=payload.scope,
            token_type=payload.token_type or "Bearer",
            expires_at=expires_at_from(payload.expires_in, self._clock()),
            owner_id=owner_id,
        )

    async def exchange_code(
        self,
        code: str,
        *,
        redirect_uri: str,
        login_url: str | None = None,
        code_verifier: str | None = None,
    ) -> TokenRecord:
        """Exchange an authorization code for tokens.

        Raises:
            CodeExchangeFailed: Provider returned a non-2xx response
            NetworkError: Transport failure
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            **self._client_form(secret_required=code_verifier is None),
        }
        if code_verifier:
            form["code_verifier"] = code_verifier

        payload = await self._post_token(
            form,
            login_url=login_url,
            error_cls=CodeExchangeFailed,
            action="Code exchange",
        )
        logger.info("Authorization code exchanged successfully")
        return self._to_record(payload, fallback_instance_url=login_url or self.login_url)

    async def refresh(
        self,
        refresh_token: str,
        *,
        login_url: str | None = None,
        owner_id: str = "",
    ) -> TokenRecord:
        """Mint a new access token from a refresh token.

        Refresh tokens do not always rotate: when the provider omits one,
        the original is carried into the new record.

        Raises:
            TokenRefreshFailed: Provider returned a non-2xx response
            NetworkError: Transport failure
        """
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._client_form(secret_required=True),
        }
        payload = await self._post_token(
            form,
            login_url=login_url,
            error_cls=TokenRefreshFailed,
            action="Token refresh",
        )
        logger.info(
            "Token refreshed: owner=%s, refresh_token=%s",
            owner_id or "(unbound)",
            token_preview(refresh_token),
        )
        return self._to_record(
            payload,
            fallback_instance_url=login_url or self.login_url,
            refresh_token=refresh_token,
            owner_id=owner_id,
        )

    async def client_credentials(self, *, login_url: str | None = None) -> TokenRecord:
        """Server-to-server token via the client credentials grant."""
        form = {
            "grant_type": "client_credentials",
            **self._client_form(secret_required=True),
        }
        payload = await self._post_token(
            form,
            login_url=login_url,
            error_cls=TokenRequestFailed,
            action="Client credentials login",
        )
        return self._to_record(payload, fallback_instance_url=login_url or self.login_url)

    async def password(
        self,
        username: str,
        password: str,
        *,
        login_url: str | None = None,
    ) -> TokenRecord:
        """Username/password login; ``password`` includes any security token."""
        form = {
            "grant_type": "password",
            "username": username,
            "password": password,
            **self._client_form(secret_required=True),
        }
        payload = await self._post_token(
            form,
            login_url=login_url,
            error_cls=TokenRequestFailed,
            action="Username/password login",
        )
        return self._to_record(payload, fallback_instance_url=login_url or self.login_url)

    async def revoke(self, token: str, *, login_url: str | None = None) -> bool:
        """Best-effort token revocation.

        Returns:
            True if the provider accepted the revocation, False on a
            non-2xx response

        Raises:
            NetworkError: Transport failure
        """
        url = self._revoke_url(login_url)
        try:
            response = await self._http.post(url, data={"token": token})
        except httpx.HTTPError as e:
            raise NetworkError(f"Token revoke error: {e}") from e

        if not response.is_success:
            logger.warning(
                "Token revoke rejected: status=%d, token=%s",
                response.status_code,
                token_preview(token),
            )
            return False

        logger.info("Token revoked: token=%s", token_preview(token))
        return True
