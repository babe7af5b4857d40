"""Shared fixtures: a fake Salesforce behind httpx.MockTransport and a settable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from salesforce_auth.config import AuthConfig
from salesforce_auth.models import AuthMode

LOGIN_URL = "https://login.salesforce.com"
INSTANCE_URL = "https://acme.my.salesforce.com"

TOKEN_PATH = "/services/oauth2/token"
REVOKE_PATH = "/services/oauth2/revoke"
USERINFO_PATH = "/services/oauth2/userinfo"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSalesforce:
    """Minimal Salesforce: token, revoke, userinfo and REST endpoints.

    Token and REST responses are queued; when a queue is empty a default
    success is returned.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_responses: list[httpx.Response | Exception] = []
        self.rest_responses: list[httpx.Response | Exception] = []
        self.revoke_response: httpx.Response | Exception = httpx.Response(200)
        self.userinfo_status = 200
        self.userinfo: dict[str, Any] = {
            "user_id": "005xx0000012345",
            "preferred_username": "jane@acme.com",
            "email": "jane@acme.com",
            "organization_id": "00Dxx0000001gPL",
            "name": "Jane Doe",
        }
        self.issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH:
            return self._next(self.token_responses, self._default_token)
        if path == REVOKE_PATH:
            if isinstance(self.revoke_response, Exception):
                raise self.revoke_response
            return self.revoke_response
        if path == USERINFO_PATH:
            if self.userinfo_status != 200:
                return httpx.Response(
                    self.userinfo_status,
                    json=[{"message": "Session expired or invalid", "errorCode": "INVALID_SESSION_ID"}],
                )
            return httpx.Response(200, json=self.userinfo)
        return self._next(self.rest_responses, lambda: httpx.Response(200, json={"ok": True}))

    def _next(self, queue: list[httpx.Response | Exception], default: Any) -> httpx.Response:
        if not queue:
            return default()
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def _default_token(self) -> httpx.Response:
        self.issued += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"00D!access-{self.issued}",
                "instance_url": INSTANCE_URL,
                "token_type": "Bearer",
                "scope": "id api refresh_token",
                "issued_at": "1767268800000",
            },
        )

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @staticmethod
    def form(request: httpx.Request) -> dict[str, str]:
        return dict(parse_qsl(request.content.decode()))


def token_response(status: int = 200, **body: Any) -> httpx.Response:
    return httpx.Response(status, json=body)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def salesforce() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
def http_client(salesforce: FakeSalesforce) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(salesforce.handler))


@pytest.fixture
def config() -> AuthConfig:
    return AuthConfig(
        client_id="abc",
        client_secret="shh-secret",
        redirect_uri="https://example.com/cb",
        login_url=LOGIN_URL,
        instance_url=INSTANCE_URL,
        default_auth_mode=AuthMode.PERSONAL,
        token_storage_type="memory",
        validate_sessions=False,
    )
