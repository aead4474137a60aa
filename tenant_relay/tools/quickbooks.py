"""
QuickBooks Online tool server.

Thin pass-through tools over the accounting API. Entity payloads are handed to
QuickBooks as-is; mapping their fields is left to the caller.
"""

from typing import Any

from tenant_relay.connectors.client import ScopedAPIClient
from tenant_relay.mcp.server import ToolServer

SERVER_NAME = "quickbooks"

ENTITY_TYPES = [
    "Account",
    "Bill",
    "Customer",
    "Estimate",
    "Invoice",
    "Item",
    "Payment",
    "Vendor",
]

_ENTITY_PROPERTY = {"type": "string", "enum": ENTITY_TYPES, "description": "QuickBooks entity type"}


def _entity_path(entity: str) -> str:
    return entity.lower()


def create_quickbooks_server(client: ScopedAPIClient) -> ToolServer:
    server = ToolServer(SERVER_NAME)

    @server.tool(
        "query",
        "Run a QuickBooks query, e.g. SELECT * FROM Customer WHERE Active = true STARTPOSITION 1 MAXRESULTS 10",
        {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "QuickBooks SQL-like query"}},
            "required": ["query"],
        },
    )
    async def query(arguments: dict[str, Any]) -> Any:
        return await client.call("query", params={"query": arguments["query"]})

    @server.tool(
        "get_company_info",
        "Fetch company information for the connected QuickBooks company",
        {"type": "object", "properties": {}},
    )
    async def get_company_info(arguments: dict[str, Any]) -> Any:
        return await client.call("query", params={"query": "SELECT * FROM CompanyInfo"})

    @server.tool(
        "get_entity",
        "Fetch a QuickBooks entity by ID",
        {
            "type": "object",
            "properties": {"entity": _ENTITY_PROPERTY, "id": {"type": "string"}},
            "required": ["entity", "id"],
        },
    )
    async def get_entity(arguments: dict[str, Any]) -> Any:
        return await client.call(f"{_entity_path(arguments['entity'])}/{arguments['id']}")

    @server.tool(
        "create_entity",
        "Create a QuickBooks entity from a raw QuickBooks payload",
        {
            "type": "object",
            "properties": {"entity": _ENTITY_PROPERTY, "payload": {"type": "object"}},
            "required": ["entity", "payload"],
        },
    )
    async def create_entity(arguments: dict[str, Any]) -> Any:
        return await client.call(_entity_path(arguments["entity"]), method="POST", body=arguments["payload"])

    @server.tool(
        "update_entity",
        "Update a QuickBooks entity. The payload must carry Id and SyncToken; updates are sparse by default",
        {
            "type": "object",
            "properties": {
                "entity": _ENTITY_PROPERTY,
                "payload": {"type": "object"},
                "sparse": {"type": "boolean", "default": True},
            },
            "required": ["entity", "payload"],
        },
    )
    async def update_entity(arguments: dict[str, Any]) -> Any:
        body = dict(arguments["payload"])
        if arguments.get("sparse", True):
            body.setdefault("sparse", True)
        return await client.call(
            _entity_path(arguments["entity"]),
            method="POST",
            body=body,
            params={"operation": "update"},
        )

    @server.tool(
        "delete_entity",
        "Delete (void) a QuickBooks transaction entity. The payload must carry Id and SyncToken",
        {
            "type": "object",
            "properties": {"entity": _ENTITY_PROPERTY, "id": {"type": "string"}, "sync_token": {"type": "string"}},
            "required": ["entity", "id", "sync_token"],
        },
    )
    async def delete_entity(arguments: dict[str, Any]) -> Any:
        return await client.call(
            _entity_path(arguments["entity"]),
            method="POST",
            body={"Id": arguments["id"], "SyncToken": arguments["sync_token"]},
            params={"operation": "delete"},
        )

    @server.tool(
        "get_report",
        "Run a QuickBooks report such as ProfitAndLoss, BalanceSheet or AgedReceivables",
        {
            "type": "object",
            "properties": {
                "report": {"type": "string"},
                "start_date": {"type": "string", "description": "YYYY-MM-DD"},
                "end_date": {"type": "string", "description": "YYYY-MM-DD"},
                "accounting_method": {"type": "string", "enum": ["Cash", "Accrual"]},
            },
            "required": ["report"],
        },
    )
    async def get_report(arguments: dict[str, Any]) -> Any:
        params = {
            key: arguments.get(key)
            for key in ("start_date", "end_date", "accounting_method")
            if arguments.get(key)
        }
        return await client.call(f"reports/{arguments['report']}", params=params)

    return server
