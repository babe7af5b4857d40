"""Tests for the authorization flow orchestrator."""

import re
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import msgspec
import pytest

from salesforce_auth.errors import (
    CodeExchangeFailed,
    IdentityResolutionFailed,
    InvalidStateParameter,
    MissingCredentials,
    OAuthAuthorizationFailed,
    StateExpired,
)
from salesforce_auth.models import TokenRecord
from salesforce_auth.oauth import (
    AuthorizationFlow,
    FlowStateTracker,
    SalesforceOAuthClient,
    parse_redirect_params,
    verify_pkce,
)
from salesforce_auth.tokens import TokenStore

from conftest import INSTANCE_URL, REVOKE_PATH, TOKEN_PATH, USERINFO_PATH, token_response


class Ticker:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def store(clock):
    return TokenStore(clock=clock)


def make_flow(config, store, http_client, clock, ticker):
    oauth = SalesforceOAuthClient(
        http_client,
        client_id=config.client_id,
        client_secret=config.client_secret,
        login_url=config.login_url,
        clock=clock,
    )
    tracker = FlowStateTracker(timeout=config.state_timeout, clock=ticker)
    return AuthorizationFlow(config, store, oauth, http_client, tracker, clock=clock)


@pytest.fixture
def flow(config, store, http_client, clock, ticker):
    return make_flow(config, store, http_client, clock, ticker)


class TestParseRedirectParams:
    """Tests for pulling OAuth parameters out of a redirect URL."""

    def test_query_string(self):
        assert parse_redirect_params("https://example.com/cb?code=C1&state=S1") == {
            "code": "C1",
            "state": "S1",
        }

    def test_fragment(self):
        params = parse_redirect_params(
            "https://example.com/cb#access_token=00D%21abc&instance_url=https%3A%2F%2Facme.my.salesforce.com"
        )

        assert params["access_token"] == "00D!abc"
        assert params["instance_url"] == INSTANCE_URL

    def test_fragment_wins_over_query(self):
        params = parse_redirect_params("https://example.com/cb?state=q#state=f&access_token=t")

        assert params["state"] == "f"


class TestAuthorizationUrl:
    """Tests for authorization URL construction."""

    def test_default_url_shape(self, flow):
        request = flow.authorization_url()

        assert request.url.startswith("https://login.salesforce.com/services/oauth2/authorize?")
        assert re.search(
            r"response_type=code&client_id=abc&redirect_uri=https%3A%2F%2Fexample\.com%2Fcb"
            r"&scope=id\+api\+refresh_token&state=[0-9a-f]{64}",
            request.url,
        )
        assert request.state in request.url
        assert len(flow.state_tracker) == 1

    def test_custom_scope_and_prompt(self, flow):
        request = flow.authorization_url("hint", scope="api web", prompt="login consent")

        query = parse_qs(urlsplit(request.url).query)
        assert query["scope"] == ["api web"]
        assert query["prompt"] == ["login consent"]

    def test_scope_override_from_config(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, scope="api")
        flow = make_flow(config, store, http_client, clock, ticker)

        query = parse_qs(urlsplit(flow.authorization_url().url).query)

        assert query["scope"] == ["api"]

    def test_requires_client_id(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, client_id=None)
        flow = make_flow(config, store, http_client, clock, ticker)

        with pytest.raises(MissingCredentials):
            flow.authorization_url()

    def test_pkce_adds_challenge(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, use_pkce=True)
        flow = make_flow(config, store, http_client, clock, ticker)

        query = parse_qs(urlsplit(flow.authorization_url().url).query)

        assert query["code_challenge_method"] == ["S256"]
        assert len(query["code_challenge"][0]) == 43

    def test_client_state_mode_passes_state_through(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, state_tracking="client")
        flow = make_flow(config, store, http_client, clock, ticker)

        request = flow.authorization_url(state="caller-state")

        assert request.state == "caller-state"
        assert parse_qs(urlsplit(request.url).query)["state"] == ["caller-state"]
        assert len(flow.state_tracker) == 0


class TestHandleCallback:
    """Tests for callback validation and the code exchange path."""

    @pytest.mark.asyncio
    async def test_code_flow_stores_token_under_identity(self, flow, store, salesforce):
        salesforce.token_responses.append(
            token_response(
                access_token="00D!new",
                refresh_token="5Aep-r1",
                instance_url=INSTANCE_URL,
                expires_in=3600,
            )
        )
        request = flow.authorization_url("placeholder")

        result = await flow.handle_callback({"code": "C1", "state": request.state})

        assert result.owner_id == "jane@acme.com"
        assert result.identity.display_name == "Jane Doe"
        stored = await store.get("jane@acme.com")
        assert stored.access_token == "00D!new"
        assert stored.owner_id == "jane@acme.com"
        assert store.peek("placeholder") is None
        userinfo = salesforce.calls(USERINFO_PATH)[0]
        assert userinfo.headers["Authorization"] == "Bearer 00D!new"

    @pytest.mark.asyncio
    async def test_unknown_state_never_reaches_token_endpoint(self, flow, salesforce):
        with pytest.raises(InvalidStateParameter):
            await flow.handle_callback({"code": "C1", "state": "S1"})

        assert salesforce.calls(TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_missing_state_rejected(self, flow, salesforce):
        with pytest.raises(InvalidStateParameter):
            await flow.handle_callback({"code": "C1"})

        assert salesforce.calls(TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, flow):
        request = flow.authorization_url()
        await flow.handle_callback({"code": "C1", "state": request.state})

        with pytest.raises(InvalidStateParameter):
            await flow.handle_callback({"code": "C2", "state": request.state})

    @pytest.mark.asyncio
    async def test_expired_state(self, flow, ticker, salesforce):
        request = flow.authorization_url()
        ticker.value += 601

        with pytest.raises(StateExpired):
            await flow.handle_callback({"code": "C1", "state": request.state})

        assert salesforce.calls(TOKEN_PATH) == []

    @pytest.mark.asyncio
    async def test_provider_error_consumes_state(self, flow):
        request = flow.authorization_url()

        with pytest.raises(OAuthAuthorizationFailed) as exc_info:
            await flow.handle_callback(
                {"error": "access_denied", "error_description": "end-user denied authorization", "state": request.state}
            )
        assert exc_info.value.error == "access_denied"

        with pytest.raises(InvalidStateParameter):
            await flow.handle_callback({"code": "C1", "state": request.state})

    @pytest.mark.asyncio
    async def test_exchange_failure(self, flow, salesforce, store):
        salesforce.token_responses.append(token_response(400, error="invalid_grant"))
        request = flow.authorization_url()

        with pytest.raises(CodeExchangeFailed):
            await flow.handle_callback({"code": "C1", "state": request.state})

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_identity_failure(self, flow, salesforce, store):
        salesforce.userinfo_status = 401
        request = flow.authorization_url()

        with pytest.raises(IdentityResolutionFailed):
            await flow.handle_callback({"code": "C1", "state": request.state})

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_owner_key_falls_back_to_username(self, flow, salesforce):
        salesforce.userinfo = {"user_id": "005xx", "preferred_username": "jane@acme.com.sandbox"}
        request = flow.authorization_url()

        result = await flow.handle_callback({"code": "C1", "state": request.state})

        assert result.owner_id == "jane@acme.com.sandbox"

    @pytest.mark.asyncio
    async def test_pkce_verifier_sent_on_exchange(self, config, store, http_client, clock, ticker, salesforce):
        config = msgspec.structs.replace(config, use_pkce=True)
        flow = make_flow(config, store, http_client, clock, ticker)
        request = flow.authorization_url()
        challenge = parse_qs(urlsplit(request.url).query)["code_challenge"][0]

        await flow.handle_callback({"code": "C1", "state": request.state})

        form = salesforce.form(salesforce.calls(TOKEN_PATH)[0])
        assert verify_pkce(form["code_verifier"], challenge)

    @pytest.mark.asyncio
    async def test_redirect_override_repeated_on_exchange(self, flow, salesforce):
        """The code exchange sends the same redirect_uri the URL carried."""
        request = flow.authorization_url(redirect_uri="https://other.example/cb")
        assert parse_qs(urlsplit(request.url).query)["redirect_uri"] == ["https://other.example/cb"]

        await flow.handle_callback({"code": "C1", "state": request.state})

        form = salesforce.form(salesforce.calls(TOKEN_PATH)[0])
        assert form["redirect_uri"] == "https://other.example/cb"

    @pytest.mark.asyncio
    async def test_default_redirect_on_exchange(self, flow, salesforce):
        request = flow.authorization_url()

        await flow.handle_callback({"code": "C1", "state": request.state})

        form = salesforce.form(salesforce.calls(TOKEN_PATH)[0])
        assert form["redirect_uri"] == "https://example.com/cb"

    @pytest.mark.asyncio
    async def test_client_state_mode_skips_matching(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, state_tracking="client")
        flow = make_flow(config, store, http_client, clock, ticker)

        result = await flow.handle_callback({"code": "C1", "state": "anything"})

        assert result.owner_id == "jane@acme.com"


class TestImplicitFlow:
    """Tests for fragment-delivered tokens."""

    @pytest.mark.asyncio
    async def test_complete_from_redirect_fragment(self, config, store, http_client, clock, ticker):
        config = msgspec.structs.replace(config, response_type="token")
        flow = make_flow(config, store, http_client, clock, ticker)
        request = flow.authorization_url()
        assert "response_type=token" in request.url

        result = await flow.complete_from_redirect(
            "https://example.com/cb#access_token=00D%21implicit"
            "&refresh_token=5Aep-imp&instance_url=https%3A%2F%2Facme.my.salesforce.com"
            f"&token_type=Bearer&state={request.state}"
        )

        stored = await store.get(result.owner_id)
        assert stored.access_token == "00D!implicit"
        assert stored.refresh_token == "5Aep-imp"
        assert stored.instance_url == INSTANCE_URL
        assert stored.expires_at == clock() + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_explicit_expires_in(self, flow, store, clock):
        request = flow.authorization_url()

        result = await flow.handle_callback(
            {"access_token": "00D!x", "expires_in": "900", "state": request.state}
        )

        assert result.token.expires_at == clock() + timedelta(seconds=900)

    @pytest.mark.asyncio
    async def test_empty_redirect(self, flow):
        with pytest.raises(OAuthAuthorizationFailed):
            await flow.complete_from_redirect("https://example.com/cb")


class TestRevokeAndStatus:
    """Tests for revoke, has_valid_tokens and token_status."""

    @pytest.fixture
    def record(self):
        return TokenRecord(
            access_token="00D!live",
            refresh_token="5Aep-live",
            instance_url=INSTANCE_URL,
            scope="id api",
        )

    @pytest.mark.asyncio
    async def test_revoke_prefers_refresh_token(self, flow, store, salesforce, record):
        await store.put("jane@acme.com", record)

        assert await flow.revoke("jane@acme.com") is True

        assert salesforce.form(salesforce.calls(REVOKE_PATH)[0]) == {"token": "5Aep-live"}
        assert await store.get("jane@acme.com") is None

    @pytest.mark.asyncio
    async def test_failed_remote_revoke_still_clears(self, flow, store, salesforce, record):
        salesforce.revoke_response = httpx.ConnectError("down")
        await store.put("jane@acme.com", record)

        assert await flow.revoke("jane@acme.com") is False

        assert await store.get("jane@acme.com") is None

    @pytest.mark.asyncio
    async def test_rejected_remote_revoke_still_clears(self, flow, store, salesforce, record):
        salesforce.revoke_response = httpx.Response(400)
        await store.put("jane@acme.com", record)

        assert await flow.revoke("jane@acme.com") is False

        assert store.peek("jane@acme.com") is None

    @pytest.mark.asyncio
    async def test_revoke_unknown_owner(self, flow, salesforce):
        assert await flow.revoke("nobody") is False
        assert salesforce.calls(REVOKE_PATH) == []

    @pytest.mark.asyncio
    async def test_token_status(self, flow, store, record, clock):
        assert flow.token_status("jane@acme.com") == {"has_tokens": False}
        await store.put(
            "jane@acme.com",
            msgspec.structs.replace(record, expires_at=clock() + timedelta(hours=1)),
        )

        status = flow.token_status("jane@acme.com")

        assert status["has_tokens"] is True
        assert status["is_expired"] is False
        assert status["can_refresh"] is True
        assert "access_token" not in status
        assert await flow.has_valid_tokens("jane@acme.com") is True
