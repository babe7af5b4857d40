"""Live Salesforce session handles.

A session is what operation handlers receive: an endpoint, a bearer
token and a way to issue REST calls. It is deliberately small so any
Salesforce client library can sit behind the same surface.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol

import httpx
import msgspec

from .errors import NetworkError, SessionExpired
from .logging_config import get_logger
from .models import TokenRecord, UserIdentity
from .oauth.identity import fetch_user_identity, parse_api_error

logger = get_logger("session")

RefreshHook = Callable[[], Awaitable[TokenRecord]]


class SessionHandle(Protocol):
    """Capabilities an operation handler may rely on."""

    @property
    def endpoint(self) -> str: ...

    @property
    def can_refresh(self) -> bool: ...

    async def request(self, method: str, path: str, **kwargs: Any) -> Any: ...

    async def identity(self) -> UserIdentity: ...

    async def probe(self) -> None: ...

    async def refresh(self) -> TokenRecord: ...


class SalesforceSession:
    """httpx-backed session for one (owner, auth mode) pool slot."""

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        *,
        http_client: httpx.AsyncClient,
        api_version: str = "v60.0",
        token_type: str = "Bearer",
        owner_id: str = "",
        refresh_hook: RefreshHook | None = None,
    ) -> None:
        self._instance_url = instance_url.rstrip("/")
        self._access_token = access_token
        self._http = http_client
        self.api_version = api_version
        self.token_type = token_type
        self.owner_id = owner_id
        self._refresh_hook = refresh_hook

    @classmethod
    def from_record(
        cls,
        record: TokenRecord,
        *,
        http_client: httpx.AsyncClient,
        api_version: str = "v60.0",
        refresh_hook: RefreshHook | None = None,
    ) -> "SalesforceSession":
        return cls(
            record.instance_url,
            record.access_token,
            http_client=http_client,
            api_version=api_version,
            token_type=record.token_type,
            owner_id=record.owner_id,
            refresh_hook=refresh_hook,
        )

    @property
    def endpoint(self) -> str:
        return self._instance_url

    @property
    def access_token(self) -> str:
        return self._access_token

    @property
    def can_refresh(self) -> bool:
        return self._refresh_hook is not None

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if path.startswith("/services/"):
            return f"{self._instance_url}{path}"
        return f"{self._instance_url}/services/data/{self.api_version}/{path.lstrip('/')}"

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Issue a REST call and return the decoded JSON body (None if empty).

        ``path`` is relative to ``/services/data/<version>/`` unless it is
        absolute or starts with ``/services/``.

        Raises:
            SalesforceApiError: Non-2xx response
            NetworkError: Transport failure
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"{self.token_type} {self._access_token}"
        headers.setdefault("Accept", "application/json")

        try:
            response = await self._http.request(
                method, self._url(path), headers=headers, **kwargs
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Salesforce request error: {e}") from e

        if not response.is_success:
            raise parse_api_error(response)
        if not response.content:
            return None
        return msgspec.json.decode(response.content)

    async def identity(self) -> UserIdentity:
        return await fetch_user_identity(
            self._http, self._instance_url, self._access_token
        )

    async def probe(self) -> None:
        """Cheapest authenticated call; raises if the session is unusable."""
        await self.identity()

    async def refresh(self) -> TokenRecord:
        """Mint a new token through the refresh hook.

        The session itself is not mutated; the pool replaces it with one
        built from the returned record.

        Raises:
            SessionExpired: No refresh hook is attached
        """
        if self._refresh_hook is None:
            raise SessionExpired(
                "Session expired and no refresh capability is available. "
                "Please re-authenticate."
            )
        return await self._refresh_hook()

    def __repr__(self) -> str:
        return f"SalesforceSession(endpoint={self._instance_url!r}, owner={self.owner_id!r})"
