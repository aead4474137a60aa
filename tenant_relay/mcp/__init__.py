"""
MCP (Model Context Protocol) tool serving.

Provides the JSON-RPC tool server, the session-aware SSE transport and the
per-server FastAPI app factory.
"""
