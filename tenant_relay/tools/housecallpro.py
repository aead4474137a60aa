"""Housecall Pro tool server."""

from typing import Any

from tenant_relay.connectors.client import ScopedAPIClient
from tenant_relay.mcp.server import ToolServer

SERVER_NAME = "housecallpro"

_PAGINATION = {
    "page": {"type": "integer", "minimum": 1, "default": 1},
    "page_size": {"type": "integer", "minimum": 1, "maximum": 100, "default": 10},
}


def _pick(arguments: dict[str, Any], *names: str) -> dict[str, Any]:
    return {name: arguments[name] for name in names if arguments.get(name) is not None}


def create_housecallpro_server(client: ScopedAPIClient) -> ToolServer:
    server = ToolServer(SERVER_NAME)

    # -------------------- CUSTOMERS --------------------

    @server.tool(
        "list_customers",
        "List/search Housecall Pro customers with pagination and filters",
        {
            "type": "object",
            "properties": {
                "q": {"type": "string", "description": "Search by name, email, mobile number, or address"},
                "location_ids": {"type": "array", "items": {"type": "string"}},
                **_PAGINATION,
            },
        },
    )
    async def list_customers(arguments: dict[str, Any]) -> Any:
        return await client.call("/customers", params=_pick(arguments, "q", "location_ids", "page", "page_size"))

    @server.tool(
        "get_customer",
        "Get a specific customer by ID",
        {"type": "object", "properties": {"customer_id": {"type": "string"}}, "required": ["customer_id"]},
    )
    async def get_customer(arguments: dict[str, Any]) -> Any:
        return await client.call(f"/customers/{arguments['customer_id']}")

    @server.tool(
        "create_customer",
        "Create a new customer",
        {"type": "object", "properties": {"customer": {"type": "object"}}, "required": ["customer"]},
    )
    async def create_customer(arguments: dict[str, Any]) -> Any:
        return await client.call("/customers", method="POST", body=arguments["customer"])

    # -------------------- JOBS --------------------

    @server.tool(
        "list_jobs",
        "List jobs with pagination and filters",
        {
            "type": "object",
            "properties": {
                "customer_id": {"type": "string"},
                "work_status": {"type": "array", "items": {"type": "string"}},
                **_PAGINATION,
            },
        },
    )
    async def list_jobs(arguments: dict[str, Any]) -> Any:
        return await client.call("/jobs", params=_pick(arguments, "customer_id", "work_status", "page", "page_size"))

    @server.tool(
        "get_job",
        "Get a specific job by ID",
        {"type": "object", "properties": {"job_id": {"type": "string"}}, "required": ["job_id"]},
    )
    async def get_job(arguments: dict[str, Any]) -> Any:
        return await client.call(f"/jobs/{arguments['job_id']}")

    @server.tool(
        "create_job",
        "Create a new job for a customer",
        {"type": "object", "properties": {"job": {"type": "object"}}, "required": ["job"]},
    )
    async def create_job(arguments: dict[str, Any]) -> Any:
        return await client.call("/jobs", method="POST", body=arguments["job"])

    # -------------------- EMPLOYEES --------------------

    @server.tool(
        "list_employees",
        "List employees",
        {"type": "object", "properties": {**_PAGINATION}},
    )
    async def list_employees(arguments: dict[str, Any]) -> Any:
        return await client.call("/employees", params=_pick(arguments, "page", "page_size"))

    return server
