"""
Chat orchestration over MCP tool servers.

For every chat turn the orchestrator:
1. Checks which providers the tenant has connected
2. Mints a session token per matching tool server (audience = that server)
3. Sends the message to the LLM with an `mcp_servers` block, so the LLM
   calls the tool servers directly with those tokens
"""

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field

from tenant_relay.auth.session_jwt import SessionTokenIssuer
from tenant_relay.config import Settings, get_settings
from tenant_relay.connectors.auth.token_store import TokenStore
from tenant_relay.kernel.errors import RelayError, UpstreamError
from tenant_relay.tools import TOOL_SERVERS, ToolServerDefinition

logger = structlog.get_logger()

ANTHROPIC_VERSION = "2023-06-01"
NO_TEXT_REPLY = "(no text response)"

SYSTEM_PROMPT = (
    "You are a business assistant. Use the connected tools for accounting, "
    "field service, email and SMS tasks."
)


class ChatReply(BaseModel):
    """Text reply for one chat turn."""

    reply: str
    servers: list[str] = Field(default_factory=list)
    stop_reason: str | None = None


def extract_text(content: Any) -> str:
    """Join the text blocks of a messages API response."""
    if not isinstance(content, list):
        return ""
    return "\n".join(
        block["text"]
        for block in content
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
    )


class ChatOrchestrator:
    """
    Example usage:
        orchestrator = ChatOrchestrator(SessionTokenIssuer.from_settings(), store)
        reply = await orchestrator.chat("u1", "How much does Acme owe us?")
    """

    def __init__(
        self,
        issuer: SessionTokenIssuer,
        store: TokenStore,
        settings: Settings | None = None,
        *,
        servers: list[ToolServerDefinition] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._issuer = issuer
        self._store = store
        self._settings = settings or get_settings()
        self._servers = servers if servers is not None else list(TOOL_SERVERS.values())
        self._transport = transport

    async def connected_servers(self, tenant_id: str) -> list[ToolServerDefinition]:
        """Tool servers with a public URL whose provider the tenant has connected."""
        available: list[ToolServerDefinition] = []
        for definition in self._servers:
            if not definition.public_url(self._settings):
                continue
            record = await self._store.get(tenant_id, definition.provider)
            if record and record.access_token:
                available.append(definition)
        return available

    def mcp_servers_block(self, tenant_id: str, servers: list[ToolServerDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "url",
                "name": definition.name,
                "url": definition.public_url(self._settings),
                "authorization_token": self._issuer.mint(tenant_id, definition.audience),
            }
            for definition in servers
        ]

    async def chat(self, tenant_id: str, message: str) -> ChatReply:
        if not message or not message.strip():
            raise RelayError(code="chat.invalid_message", message="message is required", status_code=400)
        if not self._settings.anthropic_api_key:
            raise RelayError(
                code="chat.not_configured",
                message="ANTHROPIC_API_KEY is not configured",
                status_code=500,
            )

        servers = await self.connected_servers(tenant_id)
        names = [definition.name for definition in servers]

        system = SYSTEM_PROMPT
        if not servers:
            system += " No tools are connected; tell the user to connect an integration first."

        body: dict[str, Any] = {
            "model": self._settings.anthropic_model,
            "max_tokens": self._settings.anthropic_max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": message}],
        }
        if servers:
            body["mcp_servers"] = self.mcp_servers_block(tenant_id, servers)

        logger.info("Chat request", tenant_id=tenant_id, servers=names)

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self._settings.http_timeout_seconds,
        ) as client:
            response = await client.post(
                self._settings.anthropic_api_url,
                json=body,
                headers={
                    "x-api-key": self._settings.anthropic_api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "anthropic-beta": self._settings.anthropic_beta,
                },
            )

        if not response.is_success:
            logger.error("LLM request failed", tenant_id=tenant_id, status_code=response.status_code)
            raise UpstreamError(
                status=response.status_code,
                body=response.text,
                provider="anthropic",
                message="LLM request failed",
            )

        data = response.json()
        return ChatReply(
            reply=extract_text(data.get("content")) or NO_TEXT_REPLY,
            servers=names,
            stop_reason=data.get("stop_reason"),
        )
