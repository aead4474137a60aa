"""
Session registry for SSE transports.

Maps an unguessable session id to the live stream that owns it. A stream is
registered when it opens and deregistered when it closes; nothing else holds
a reference to a session.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from tenant_relay.mcp.transport import SseSession

logger = structlog.get_logger()


class SessionRegistry(ABC):
    """Live transport sessions keyed by session id."""

    @abstractmethod
    def register(self, session: "SseSession") -> None:
        """Add a session. Re-registering an id is a programming error."""

    @abstractmethod
    def lookup(self, session_id: str) -> "SseSession | None":
        """Return the live session for an id, or None."""

    @abstractmethod
    def deregister(self, session_id: str) -> bool:
        """Remove a session. Returns True when it was present."""

    @abstractmethod
    def __len__(self) -> int: ...


class InMemorySessionRegistry(SessionRegistry):
    """Process-local registry; sessions live as long as their stream."""

    def __init__(self) -> None:
        self._sessions: dict[str, SseSession] = {}

    def register(self, session: "SseSession") -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Session already registered: {session.session_id}")
        self._sessions[session.session_id] = session
        logger.debug("Session registered", mcp_session_id=session.session_id, active=len(self._sessions))

    def lookup(self, session_id: str) -> "SseSession | None":
        return self._sessions.get(session_id)

    def deregister(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.debug("Session deregistered", mcp_session_id=session_id, active=len(self._sessions))
        return removed

    def __len__(self) -> int:
        return len(self._sessions)
