"""
tenant-relay

Authenticated per-session proxy between an LLM orchestrator and external
business APIs, exposed as MCP-style tool servers over SSE.
"""

__version__ = "0.1.0"
