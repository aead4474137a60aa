"""Gmail tool server."""

import base64
from email.message import EmailMessage
from typing import Any

from tenant_relay.connectors.client import ScopedAPIClient
from tenant_relay.mcp.server import ToolServer

SERVER_NAME = "gmail"


def build_raw_message(
    to: str,
    subject: str,
    body: str,
    cc: str | None = None,
    bcc: str | None = None,
) -> str:
    """RFC 2822 message encoded as the base64url `raw` field Gmail expects."""
    message = EmailMessage()
    message["To"] = to
    if cc:
        message["Cc"] = cc
    if bcc:
        message["Bcc"] = bcc
    message["Subject"] = subject
    message.set_content(body, subtype="html")
    return base64.urlsafe_b64encode(message.as_bytes()).decode()


def create_gmail_server(client: ScopedAPIClient) -> ToolServer:
    server = ToolServer(SERVER_NAME)

    @server.tool(
        "get_latest_emails",
        "List the most recent messages in the inbox",
        {
            "type": "object",
            "properties": {"max_results": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10}},
        },
    )
    async def get_latest_emails(arguments: dict[str, Any]) -> Any:
        return await client.call(
            "messages",
            params={"maxResults": arguments.get("max_results", 10), "labelIds": "INBOX"},
        )

    @server.tool(
        "search_emails",
        "Search messages with Gmail query syntax, e.g. from:alice is:unread",
        {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 50, "default": 10},
            },
            "required": ["query"],
        },
    )
    async def search_emails(arguments: dict[str, Any]) -> Any:
        return await client.call(
            "messages",
            params={"q": arguments["query"], "maxResults": arguments.get("max_results", 10)},
        )

    @server.tool(
        "get_email",
        "Fetch one message by ID",
        {"type": "object", "properties": {"message_id": {"type": "string"}}, "required": ["message_id"]},
    )
    async def get_email(arguments: dict[str, Any]) -> Any:
        return await client.call(f"messages/{arguments['message_id']}", params={"format": "full"})

    @server.tool(
        "send_email",
        "Send an email from the connected mailbox",
        {
            "type": "object",
            "properties": {
                "to": {"type": "string"},
                "subject": {"type": "string"},
                "body": {"type": "string", "description": "HTML body"},
                "cc": {"type": "string"},
                "bcc": {"type": "string"},
            },
            "required": ["to", "subject", "body"],
        },
    )
    async def send_email(arguments: dict[str, Any]) -> Any:
        raw = build_raw_message(
            arguments["to"],
            arguments["subject"],
            arguments["body"],
            cc=arguments.get("cc"),
            bcc=arguments.get("bcc"),
        )
        return await client.call("messages/send", method="POST", body={"raw": raw})

    return server
