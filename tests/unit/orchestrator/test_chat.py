"""
Unit tests for the chat orchestrator.
"""

import json

import httpx
import jwt
import pytest

from tenant_relay.auth.session_jwt import TENANT_CLAIM
from tenant_relay.connectors.auth.token_store import CredentialRecord
from tenant_relay.kernel.errors import RelayError, UpstreamError
from tenant_relay.orchestrator.chat import ANTHROPIC_VERSION, NO_TEXT_REPLY, ChatOrchestrator, extract_text

pytestmark = pytest.mark.unit


class FakeLLM:
    def __init__(self, response: httpx.Response | None = None):
        self.response = response or httpx.Response(
            200, json={"content": [{"type": "text", "text": "Acme owes $120."}], "stop_reason": "end_turn"}
        )
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _orchestrator(issuer, store, settings, llm: FakeLLM) -> ChatOrchestrator:
    return ChatOrchestrator(issuer, store, settings, transport=httpx.MockTransport(llm))


class TestExtractText:
    def test_joins_text_blocks(self):
        content = [
            {"type": "text", "text": "a"},
            {"type": "mcp_tool_use", "name": "query"},
            {"type": "text", "text": "b"},
        ]

        assert extract_text(content) == "a\nb"

    def test_non_list(self):
        assert extract_text(None) == ""


class TestChat:
    @pytest.mark.asyncio
    async def test_only_connected_servers_with_urls_are_offered(self, issuer, settings, token_store, qb_record):
        await token_store.upsert(qb_record)
        # Housecall Pro is connected but has no public URL in settings.
        await token_store.upsert(CredentialRecord(tenant_id="u1", provider="housecallpro", access_token="hcp"))
        llm = FakeLLM()

        reply = await _orchestrator(issuer, token_store, settings, llm).chat("u1", "How much does Acme owe?")

        assert reply.reply == "Acme owes $120."
        assert reply.servers == ["quickbooks"]
        assert reply.stop_reason == "end_turn"
        servers = llm.body["mcp_servers"]
        assert [server["name"] for server in servers] == ["quickbooks"]
        assert servers[0]["type"] == "url"
        assert servers[0]["url"] == "https://qb.example.com/sse"

    @pytest.mark.asyncio
    async def test_each_server_gets_a_token_for_its_own_audience(self, issuer, settings, token_store, qb_record):
        await token_store.upsert(qb_record)
        await token_store.upsert(CredentialRecord(tenant_id="u1", provider="gmail", access_token="G1"))
        llm = FakeLLM()

        await _orchestrator(issuer, token_store, settings, llm).chat("u1", "hi")

        for server in llm.body["mcp_servers"]:
            claims = jwt.decode(
                server["authorization_token"],
                "test-session-secret",
                algorithms=["HS256"],
                audience=f"{server['name']}-mcp",
                issuer="backend",
            )
            assert claims[TENANT_CLAIM] == "u1"

    @pytest.mark.asyncio
    async def test_headers(self, issuer, settings, token_store):
        llm = FakeLLM()

        await _orchestrator(issuer, token_store, settings, llm).chat("u1", "hi")

        headers = llm.requests[0].headers
        assert headers["x-api-key"] == "sk-test"
        assert headers["anthropic-version"] == ANTHROPIC_VERSION
        assert headers["anthropic-beta"] == settings.anthropic_beta
        assert "mcp_servers" not in llm.body

    @pytest.mark.asyncio
    async def test_no_text_reply(self, issuer, settings, token_store):
        llm = FakeLLM(httpx.Response(200, json={"content": [], "stop_reason": "end_turn"}))

        reply = await _orchestrator(issuer, token_store, settings, llm).chat("u1", "hi")

        assert reply.reply == NO_TEXT_REPLY

    @pytest.mark.asyncio
    async def test_llm_failure(self, issuer, settings, token_store):
        llm = FakeLLM(httpx.Response(529, text="overloaded"))

        with pytest.raises(UpstreamError) as exc_info:
            await _orchestrator(issuer, token_store, settings, llm).chat("u1", "hi")

        assert exc_info.value.status == 529
        assert exc_info.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_empty_message(self, issuer, settings, token_store):
        llm = FakeLLM()

        with pytest.raises(RelayError) as exc_info:
            await _orchestrator(issuer, token_store, settings, llm).chat("u1", "   ")

        assert exc_info.value.code == "chat.invalid_message"
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_missing_api_key(self, issuer, settings, token_store):
        llm = FakeLLM()
        unconfigured = settings.model_copy(update={"anthropic_api_key": None})

        with pytest.raises(RelayError) as exc_info:
            await _orchestrator(issuer, token_store, unconfigured, llm).chat("u1", "hi")

        assert exc_info.value.code == "chat.not_configured"
