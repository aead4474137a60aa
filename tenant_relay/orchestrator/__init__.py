"""
Chat orchestrator.

Forwards a tenant's chat message to the LLM messages API with one
audience-scoped session token per connected tool server.
"""

from tenant_relay.orchestrator.chat import ChatOrchestrator, ChatReply

__all__ = ["ChatOrchestrator", "ChatReply"]
