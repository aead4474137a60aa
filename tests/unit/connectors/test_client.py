"""
Unit tests for the scoped external-API client.

Upstream APIs and the token endpoint share one httpx MockTransport so each
test can count exactly which requests were made.
"""

import base64
import json
from urllib.parse import parse_qs

import httpx
import pytest

from tenant_relay.auth.context import RequestContext, tenant_context
from tenant_relay.connectors.auth.token_store import CredentialRecord
from tenant_relay.connectors.client import ScopedAPIClient, stringify_param
from tenant_relay.connectors.providers import QuickBooksAdapter, TwilioAdapter
from tenant_relay.kernel.errors import (
    MissingContextError,
    NotConnectedError,
    RefreshFailedError,
    UnauthorizedError,
    UpstreamError,
)
from tenant_relay.kernel.time import epoch_seconds

pytestmark = pytest.mark.unit

TOKEN_HOST = "oauth.platform.intuit.com"
API_HOST = "quickbooks.api.intuit.com"


class FakeUpstream:
    """Routes requests to the QuickBooks API or token endpoint and records them."""

    def __init__(self, api_responses, token_response=None):
        self.api_responses = list(api_responses)
        self.token_response = token_response or httpx.Response(
            200, json={"access_token": "A2", "refresh_token": "R2", "expires_in": 3600}
        )
        self.api_calls: list[httpx.Request] = []
        self.token_calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == TOKEN_HOST:
            self.token_calls.append(request)
            return self.token_response
        self.api_calls.append(request)
        return self.api_responses.pop(0)

    @property
    def bearer_tokens(self) -> list[str]:
        return [call.headers["Authorization"].removeprefix("Bearer ") for call in self.api_calls]


@pytest.fixture
def make_client(token_store, make_oauth):
    def _make(upstream: FakeUpstream) -> ScopedAPIClient:
        oauth = make_oauth(token_store, upstream)
        return ScopedAPIClient(
            QuickBooksAdapter(),
            token_store,
            oauth,
            transport=httpx.MockTransport(upstream),
        )

    return _make


def bound(tenant_id: str = "u1"):
    return tenant_context(RequestContext.bound(tenant_id, session_id="s1"))


# =============================================================================
# Happy path
# =============================================================================


class TestCall:
    @pytest.mark.asyncio
    async def test_successful_call(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(200, json={"CompanyInfo": {"CompanyName": "Acme"}})])

        with bound():
            result = await make_client(upstream).call("companyinfo/realm_1")

        assert result == {"CompanyInfo": {"CompanyName": "Acme"}}
        request = upstream.api_calls[0]
        assert request.method == "GET"
        assert request.url.host == API_HOST
        assert request.url.path == "/v3/company/realm_1/companyinfo/realm_1"
        assert request.headers["Authorization"] == "Bearer A1"
        assert request.headers["Accept"] == "application/json"
        assert upstream.token_calls == []

    @pytest.mark.asyncio
    async def test_required_params_merged_without_clobbering(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(200, json={}), httpx.Response(200, json={})])
        client = make_client(upstream)

        with bound():
            await client.call("query", params={"query": "select * from Customer"})
            await client.call("query", params={"minorversion": 65})

        first = parse_qs(upstream.api_calls[0].url.query.decode())
        second = parse_qs(upstream.api_calls[1].url.query.decode())
        assert first == {"minorversion": ["75"], "query": ["select * from Customer"]}
        assert second == {"minorversion": ["65"]}

    @pytest.mark.asyncio
    async def test_post_sends_json_body(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(200, json={"Customer": {"Id": "1"}})])

        with bound():
            await make_client(upstream).call("customer", method="post", body={"DisplayName": "Acme"})

        request = upstream.api_calls[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"DisplayName": "Acme"}

    @pytest.mark.asyncio
    async def test_empty_body_parses_to_empty_dict(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(204)])

        with bound():
            assert await make_client(upstream).call("customer/1") == {}

    @pytest.mark.asyncio
    async def test_non_json_body_returned_as_text(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(200, text="plain")])

        with bound():
            assert await make_client(upstream).call("customer/1") == "plain"

    @pytest.mark.asyncio
    async def test_adapter_auth_flow_sets_authorization(self, token_store, make_oauth):
        await token_store.upsert(
            CredentialRecord(tenant_id="u1", provider="twilio", access_token="auth-token", provider_account_id="AC123")
        )
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        client = ScopedAPIClient(
            TwilioAdapter(),
            token_store,
            make_oauth(token_store),
            transport=httpx.MockTransport(handler),
        )
        with bound():
            await client.call("Messages.json", method="post", body={"To": "+15550100"})

        expected = base64.b64encode(b"AC123:auth-token").decode()
        assert requests[0].headers["Authorization"] == f"Basic {expected}"
        assert requests[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"


# =============================================================================
# Missing context / credential
# =============================================================================


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_call_outside_context_fails_before_any_request(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([])

        with pytest.raises(MissingContextError):
            await make_client(upstream).call("companyinfo/realm_1")

        assert upstream.api_calls == []

    @pytest.mark.asyncio
    async def test_no_record_is_not_connected(self, make_client):
        upstream = FakeUpstream([])

        with bound(), pytest.raises(NotConnectedError) as exc_info:
            await make_client(upstream).call("companyinfo/realm_1")

        assert exc_info.value.provider == "quickbooks"
        assert upstream.api_calls == []

    @pytest.mark.asyncio
    async def test_record_without_realm_is_not_connected(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record.model_copy(update={"provider_account_id": None}))

        with bound(), pytest.raises(NotConnectedError):
            await make_client(FakeUpstream([])).call("companyinfo/realm_1")

    @pytest.mark.asyncio
    async def test_other_tenants_credential_is_never_used(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([])

        with bound("u2"), pytest.raises(NotConnectedError):
            await make_client(upstream).call("companyinfo/realm_1")

        assert upstream.api_calls == []


# =============================================================================
# Refresh-once
# =============================================================================


class TestRefreshOnce:
    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_retried(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record.model_copy(update={"expires_at": epoch_seconds() - 10}))
        upstream = FakeUpstream([
            httpx.Response(401, json={"fault": "expired"}),
            httpx.Response(200, json={"CompanyInfo": {"CompanyName": "Acme"}}),
        ])

        with bound():
            result = await make_client(upstream).call("companyinfo/realm_1")

        assert result == {"CompanyInfo": {"CompanyName": "Acme"}}
        assert upstream.bearer_tokens == ["A1", "A2"]
        assert len(upstream.token_calls) == 1
        stored = await token_store.get("u1", "quickbooks")
        assert stored.access_token == "A2"
        assert stored.refresh_token == "R2"
        assert stored.provider_account_id == "realm_1"
        assert stored.expires_at > epoch_seconds()

    @pytest.mark.asyncio
    async def test_second_rejection_raises_unauthorized(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(401), httpx.Response(401)])

        with bound(), pytest.raises(UnauthorizedError) as exc_info:
            await make_client(upstream).call("companyinfo/realm_1")

        assert exc_info.value.provider == "quickbooks"
        assert len(upstream.api_calls) == 2
        assert len(upstream.token_calls) == 1
        # The refreshed credential stays in place.
        assert (await token_store.get("u1", "quickbooks")).access_token == "A2"

    @pytest.mark.asyncio
    async def test_quickbooks_auth_fault_triggers_refresh(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        fault = {"Fault": {"Error": [{"code": "3100", "Message": "ApplicationAuthorizationFailed"}]}}
        upstream = FakeUpstream([httpx.Response(400, json=fault), httpx.Response(200, json={"ok": True})])

        with bound():
            assert await make_client(upstream).call("companyinfo/realm_1") == {"ok": True}

        assert len(upstream.token_calls) == 1

    @pytest.mark.asyncio
    async def test_no_refresh_token_fails_without_refresh(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record.model_copy(update={"refresh_token": None}))
        upstream = FakeUpstream([httpx.Response(401)])

        with bound(), pytest.raises(UnauthorizedError):
            await make_client(upstream).call("companyinfo/realm_1")

        assert len(upstream.api_calls) == 1
        assert upstream.token_calls == []

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream(
            [httpx.Response(401)],
            token_response=httpx.Response(400, json={"error": "invalid_grant"}),
        )

        with bound(), pytest.raises(RefreshFailedError) as exc_info:
            await make_client(upstream).call("companyinfo/realm_1")

        assert exc_info.value.status == 400
        assert len(upstream.api_calls) == 1
        assert (await token_store.get("u1", "quickbooks")).access_token == "A1"


# =============================================================================
# Upstream errors
# =============================================================================


class TestUpstreamErrors:
    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(500, text="boom")])

        with bound(), pytest.raises(UpstreamError) as exc_info:
            await make_client(upstream).call("companyinfo/realm_1")

        assert exc_info.value.status == 500
        assert exc_info.value.body == "boom"
        assert len(upstream.api_calls) == 1
        assert upstream.token_calls == []

    @pytest.mark.asyncio
    async def test_plain_bad_request_not_treated_as_auth_failure(self, token_store, qb_record, make_client):
        await token_store.upsert(qb_record)
        upstream = FakeUpstream([httpx.Response(400, json={"Fault": {"Error": [{"code": "2010"}]}})])

        with bound(), pytest.raises(UpstreamError):
            await make_client(upstream).call("query", params={"query": "bad"})

        assert upstream.token_calls == []


class TestStringifyParam:
    def test_booleans_are_lowercase(self):
        assert stringify_param(True) == "true"
        assert stringify_param(False) == "false"

    def test_other_values(self):
        assert stringify_param(3) == "3"
        assert stringify_param("x") == "x"
