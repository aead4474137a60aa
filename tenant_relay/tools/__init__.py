"""
Tool servers.

Each tool server is one provider adapter plus a set of tools, published under
its own session-token audience.
"""

from collections.abc import Callable
from dataclasses import dataclass

from tenant_relay.config import Settings
from tenant_relay.connectors.client import ProviderAdapter, ScopedAPIClient
from tenant_relay.connectors.providers import (
    GmailAdapter,
    HousecallProAdapter,
    QuickBooksAdapter,
    TwilioAdapter,
)
from tenant_relay.mcp.server import ToolServer
from tenant_relay.tools.gmail import create_gmail_server
from tenant_relay.tools.housecallpro import create_housecallpro_server
from tenant_relay.tools.quickbooks import create_quickbooks_server
from tenant_relay.tools.sms import create_sms_server


@dataclass(frozen=True)
class ToolServerDefinition:
    name: str
    audience: str
    provider: str
    adapter_factory: Callable[[Settings], ProviderAdapter]
    build: Callable[[ScopedAPIClient, Settings], ToolServer]
    url_setting: str

    @property
    def service(self) -> str:
        """Name reported by the health endpoint."""
        return self.audience

    def public_url(self, settings: Settings) -> str | None:
        return getattr(settings, self.url_setting)


TOOL_SERVERS: dict[str, ToolServerDefinition] = {
    definition.name: definition
    for definition in (
        ToolServerDefinition(
            name="quickbooks",
            audience="quickbooks-mcp",
            provider="quickbooks",
            adapter_factory=QuickBooksAdapter.from_settings,
            build=lambda client, settings: create_quickbooks_server(client),
            url_setting="mcp_quickbooks_url",
        ),
        ToolServerDefinition(
            name="housecallpro",
            audience="housecallpro-mcp",
            provider="housecallpro",
            adapter_factory=lambda settings: HousecallProAdapter(),
            build=lambda client, settings: create_housecallpro_server(client),
            url_setting="mcp_housecallpro_url",
        ),
        ToolServerDefinition(
            name="gmail",
            audience="gmail-mcp",
            provider="gmail",
            adapter_factory=lambda settings: GmailAdapter(),
            build=lambda client, settings: create_gmail_server(client),
            url_setting="mcp_gmail_url",
        ),
        ToolServerDefinition(
            name="sms",
            audience="sms-mcp",
            provider="twilio",
            adapter_factory=lambda settings: TwilioAdapter(),
            build=lambda client, settings: create_sms_server(client, default_from=settings.twilio_from_number),
            url_setting="mcp_sms_url",
        ),
    )
}


def get_tool_server_definition(name: str) -> ToolServerDefinition:
    try:
        return TOOL_SERVERS[name]
    except KeyError:
        raise ValueError(f"Unknown tool server: {name} (expected one of {', '.join(TOOL_SERVERS)})") from None


__all__ = [
    "TOOL_SERVERS",
    "ToolServerDefinition",
    "create_gmail_server",
    "create_housecallpro_server",
    "create_quickbooks_server",
    "create_sms_server",
    "get_tool_server_definition",
]
