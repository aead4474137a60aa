"""
MCP Tool Server

JSON-RPC 2.0 dispatch for the MCP methods a tool server answers over its SSE
transport: initialize, notifications/initialized, ping, tools/list and
tools/call. Tools are plain async callables registered with `@server.tool()`.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from mcp.types import CallToolResult, TextContent, Tool
from pydantic import BaseModel, ValidationError

from tenant_relay.kernel.errors import RelayError

logger = structlog.get_logger()

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


# =============================================================================
# JSON-RPC MODELS
# =============================================================================


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 request or notification."""

    jsonrpc: str = "2.0"
    id: int | str | None = None
    method: str
    params: dict[str, Any] | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None


class JsonRpcResponse(BaseModel):
    """JSON-RPC 2.0 response."""

    jsonrpc: str = "2.0"
    id: int | str | None = None
    result: Any | None = None
    error: dict[str, Any] | None = None

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error
        else:
            message["result"] = self.result
        return message


@dataclass
class ToolSpec:
    """A registered tool."""

    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def definition(self) -> Tool:
        return Tool(name=self.name, description=self.description, inputSchema=self.input_schema)

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        return [name for name in self.input_schema.get("required", []) if arguments.get(name) is None]


def _text_result(payload: Any, *, is_error: bool = False) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload, indent=2, default=str))],
        isError=is_error,
    )


class ToolServer:
    """
    A named MCP tool server.

    Example usage:
        server = ToolServer("quickbooks")

        @server.tool("get_company_info", "Fetch company info")
        async def get_company_info(arguments):
            return await client.call("companyinfo/1")

        message = await server.handle_message({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
    """

    def __init__(self, name: str, version: str = "1.0.0"):
        self.name = name
        self.version = version
        self._tools: dict[str, ToolSpec] = {}

    def tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any] | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering an async tool handler."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.add_tool(name, description, handler, input_schema)
            return handler

        return decorator

    def add_tool(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        if name in self._tools:
            raise ValueError(f"Tool already registered: {name}")
        spec = ToolSpec(name=name, description=description, handler=handler)
        if input_schema is not None:
            spec.input_schema = input_schema
        self._tools[name] = spec

    def get_tool(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return [spec.definition() for spec in self._tools.values()]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> CallToolResult:
        """
        Run a tool. Taxonomy errors become an error result, never an exception.

        Raises:
            KeyError: unknown tool
        """
        spec = self._tools[name]
        logger.info("MCP tool called", server=self.name, tool=name)

        try:
            result = await spec.handler(arguments)
        except RelayError as exc:
            logger.warning("MCP tool failed", server=self.name, tool=name, code=exc.code, error=exc.message)
            return _text_result(exc.to_tool_error(), is_error=True)
        except Exception as exc:
            logger.exception("MCP tool execution failed", server=self.name, tool=name, error=str(exc))
            return _text_result(
                {"error": {"code": "internal.unhandled", "message": "Tool execution failed"}},
                is_error=True,
            )

        return _text_result(result)

    async def handle_message(self, payload: Any) -> dict[str, Any] | None:
        """
        Handle one inbound JSON-RPC message.

        Returns:
            The response message, or None for notifications
        """
        try:
            request = JsonRpcRequest.model_validate(payload)
        except ValidationError as exc:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            if not isinstance(request_id, (int, str)):
                request_id = None
            return JsonRpcResponse(
                id=request_id,
                error={"code": INVALID_REQUEST, "message": f"Invalid request: {exc.error_count()} validation error(s)"},
            ).to_message()

        response = await self._dispatch(request)
        if request.is_notification:
            return None
        return response.to_message()

    async def _dispatch(self, request: JsonRpcRequest) -> JsonRpcResponse:
        logger.debug("MCP JSON-RPC request", server=self.name, method=request.method)
        params = request.params or {}

        try:
            if request.method == "initialize":
                return JsonRpcResponse(
                    id=request.id,
                    result={
                        "protocolVersion": params.get("protocolVersion") or PROTOCOL_VERSION,
                        "serverInfo": {"name": self.name, "version": self.version},
                        "capabilities": {"tools": {"listChanged": False}},
                    },
                )

            elif request.method == "notifications/initialized":
                return JsonRpcResponse(id=request.id, result={})

            elif request.method == "ping":
                return JsonRpcResponse(id=request.id, result={})

            elif request.method == "tools/list":
                return JsonRpcResponse(
                    id=request.id,
                    result={
                        "tools": [
                            tool.model_dump(mode="json", by_alias=True, exclude_none=True)
                            for tool in self.list_tools()
                        ]
                    },
                )

            elif request.method == "tools/call":
                tool_name = params.get("name")
                arguments = params.get("arguments") or {}

                spec = self.get_tool(tool_name) if isinstance(tool_name, str) else None
                if spec is None:
                    return JsonRpcResponse(
                        id=request.id,
                        error={"code": METHOD_NOT_FOUND, "message": f"Tool not found: {tool_name}"},
                    )
                if not isinstance(arguments, dict):
                    return JsonRpcResponse(
                        id=request.id,
                        error={"code": INVALID_PARAMS, "message": "Tool arguments must be an object"},
                    )
                missing = spec.missing_arguments(arguments)
                if missing:
                    return JsonRpcResponse(
                        id=request.id,
                        error={"code": INVALID_PARAMS, "message": f"Missing required arguments: {', '.join(missing)}"},
                    )

                result = await self.call_tool(tool_name, arguments)
                return JsonRpcResponse(
                    id=request.id,
                    result=result.model_dump(mode="json", by_alias=True, exclude_none=True),
                )

            else:
                return JsonRpcResponse(
                    id=request.id,
                    error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {request.method}"},
                )

        except Exception as e:
            logger.error("MCP JSON-RPC error", server=self.name, method=request.method, error=str(e))
            return JsonRpcResponse(
                id=request.id,
                error={"code": INTERNAL_ERROR, "message": str(e)},
            )
