"""Twilio SMS tool server."""

from typing import Any

from tenant_relay.connectors.client import ScopedAPIClient
from tenant_relay.kernel.errors import RelayError
from tenant_relay.mcp.server import ToolServer

SERVER_NAME = "sms"


def create_sms_server(client: ScopedAPIClient, *, default_from: str | None = None) -> ToolServer:
    server = ToolServer(SERVER_NAME)

    @server.tool(
        "send_sms",
        "Send an SMS message",
        {
            "type": "object",
            "properties": {
                "to": {"type": "string", "description": "E.164 phone number"},
                "body": {"type": "string", "maxLength": 1600},
                "from_number": {"type": "string", "description": "Sender number; defaults to the configured number"},
            },
            "required": ["to", "body"],
        },
    )
    async def send_sms(arguments: dict[str, Any]) -> Any:
        sender = arguments.get("from_number") or default_from
        if not sender:
            raise RelayError(
                code="tool.invalid_arguments",
                message="No sender number given and none configured",
                status_code=400,
            )
        return await client.call(
            "Messages.json",
            method="POST",
            body={"To": arguments["to"], "From": sender, "Body": arguments["body"]},
        )

    @server.tool(
        "get_message",
        "Fetch the status of a sent message",
        {"type": "object", "properties": {"message_sid": {"type": "string"}}, "required": ["message_sid"]},
    )
    async def get_message(arguments: dict[str, Any]) -> Any:
        return await client.call(f"Messages/{arguments['message_sid']}.json")

    @server.tool(
        "list_messages",
        "List recent messages",
        {
            "type": "object",
            "properties": {"limit": {"type": "integer", "minimum": 1, "maximum": 100, "default": 20}},
        },
    )
    async def list_messages(arguments: dict[str, Any]) -> Any:
        return await client.call("Messages.json", params={"PageSize": arguments.get("limit", 20)})

    return server
