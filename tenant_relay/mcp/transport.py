"""
MCP HTTP/SSE Transport

One authenticated server-sent event stream per client session:

- `GET /sse` verifies the session token, binds the tenant to a fresh
  RequestContext and streams an `endpoint` event followed by `message`
  events carrying JSON-RPC responses.
- `POST /messages?sessionId=<id>` verifies the token again, checks that the
  session is live and belongs to the same tenant, and schedules handling
  under the stream's context. The response is 202; the result arrives on
  the stream.

The session is opened inside the stream iterator and torn down in its
`finally`; a background task closes the iterator once the response ends, so
a client that disconnects before the first event leaves nothing registered.
"""

import asyncio
import json
import secrets
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from typing import Any

import structlog
from fastapi import HTTPException, Request, Response
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from tenant_relay.auth.context import RequestContext, run_with_context
from tenant_relay.auth.middleware import authenticate_request
from tenant_relay.auth.session_jwt import SessionTokenVerifier
from tenant_relay.kernel.errors import MissingContextError, NoActiveTransportError
from tenant_relay.mcp.registry import InMemorySessionRegistry, SessionRegistry
from tenant_relay.mcp.server import ToolServer

logger = structlog.get_logger()

SESSION_QUERY_PARAM = "sessionId"
DEFAULT_PING_SECONDS = 15
DEFAULT_MAX_PENDING_MESSAGES = 256

MessageHandler = Callable[[Any], Awaitable[dict[str, Any] | None]]


class SseSession:
    """
    A live stream: its bound context, outbound queue and in-flight calls.

    Results produced after close() are dropped; in-flight calls are not
    cancelled. A consumer that falls `max_pending` messages behind has its
    stream closed.
    """

    def __init__(
        self,
        session_id: str,
        context: RequestContext,
        endpoint: str,
        *,
        max_pending: int = DEFAULT_MAX_PENDING_MESSAGES,
    ):
        self.session_id = session_id
        self.context = context
        self.endpoint = endpoint
        self._tenant_id = context.tenant_id
        self._outbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(
            maxsize=max_pending + 1  # room for the end-of-stream marker
        )
        self._max_pending = max_pending
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def send(self, message: dict[str, Any]) -> bool:
        """Queue a message for the stream. Returns False once closed."""
        if self._closed:
            logger.debug("Discarding message for closed session", mcp_session_id=self.session_id)
            return False
        if self._outbound.qsize() >= self._max_pending:
            logger.warning(
                "Closing session with a stalled consumer",
                mcp_session_id=self.session_id,
                pending_messages=self._outbound.qsize(),
            )
            self.close()
            return False
        self._outbound.put_nowait(message)
        return True

    def dispatch(self, handler: MessageHandler, payload: Any) -> asyncio.Task:
        """Run `handler(payload)` under this stream's context; its reply goes to the stream."""

        async def _run() -> None:
            try:
                reply = await run_with_context(self.context, handler, payload)
            except MissingContextError:
                logger.debug("Session closed before message was handled", mcp_session_id=self.session_id)
                return
            except Exception as exc:
                logger.exception("Session message handling failed", mcp_session_id=self.session_id, error=str(exc))
                return
            if reply is not None:
                self.send(reply)

        task = asyncio.create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def close(self) -> None:
        """Stop the stream and release the binding. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.context.close()
        self._outbound.put_nowait(None)

    async def events(self) -> AsyncIterator[dict[str, str]]:
        yield {"event": "endpoint", "data": self.endpoint}
        while True:
            message = await self._outbound.get()
            if message is None:
                return
            yield {"event": "message", "data": json.dumps(message, default=str)}


class SseTransport:
    """
    Session-aware SSE transport for one tool server.

    Example usage:
        transport = SseTransport(server, SessionTokenVerifier.from_settings("quickbooks-mcp"))
        app.add_api_route("/sse", transport.handle_sse, methods=["GET"])
        app.add_api_route("/messages", transport.handle_post_message, methods=["POST"])
    """

    def __init__(
        self,
        server: ToolServer,
        verifier: SessionTokenVerifier,
        registry: SessionRegistry | None = None,
        *,
        message_path: str = "/messages",
        ping_seconds: int = DEFAULT_PING_SECONDS,
        max_pending: int = DEFAULT_MAX_PENDING_MESSAGES,
    ):
        self.server = server
        self.verifier = verifier
        self.registry = registry or InMemorySessionRegistry()
        self.message_path = message_path
        self.ping_seconds = ping_seconds
        self.max_pending = max_pending

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def open_session(self, tenant_id: str) -> SseSession:
        session_id = secrets.token_urlsafe(24)
        context = RequestContext.bound(tenant_id, session_id=session_id)
        session = SseSession(
            session_id=session_id,
            context=context,
            endpoint=f"{self.message_path}?{SESSION_QUERY_PARAM}={session_id}",
            max_pending=self.max_pending,
        )
        self.registry.register(session)
        logger.info("MCP session opened", server=self.server.name, tenant_id=tenant_id, mcp_session_id=session_id)
        return session

    def close_session(self, session_id: str) -> None:
        session = self.registry.lookup(session_id)
        self.registry.deregister(session_id)
        if session is not None:
            session.close()
            logger.info(
                "MCP session closed",
                server=self.server.name,
                mcp_session_id=session_id,
                pending=session.pending,
            )

    def accept(self, session_id: str | None, tenant_id: str, payload: Any) -> asyncio.Task:
        """
        Route an inbound message to its live session.

        Raises:
            NoActiveTransportError: unknown id, closed stream, or a stream
                bound to a different tenant
        """
        session = self.registry.lookup(session_id) if session_id else None
        if session is None or session.closed:
            raise NoActiveTransportError()
        if session.tenant_id != tenant_id:
            logger.warning(
                "Message rejected for session owned by another tenant",
                server=self.server.name,
                tenant_id=tenant_id,
                mcp_session_id=session_id,
            )
            raise NoActiveTransportError()
        return session.dispatch(self.server.handle_message, payload)

    async def stream(self, tenant_id: str) -> AsyncGenerator[dict[str, str], None]:
        """Open a session for `tenant_id` and yield its events until it closes."""
        session = self.open_session(tenant_id)
        try:
            async for event in session.events():
                yield event
        finally:
            self.close_session(session.session_id)

    # =========================================================================
    # HTTP handlers
    # =========================================================================

    async def handle_sse(self, request: Request) -> EventSourceResponse:
        claims = authenticate_request(request, self.verifier)
        events = self.stream(claims.tenant_id)
        return EventSourceResponse(
            events,
            ping=self.ping_seconds,
            background=BackgroundTask(_close_stream, events),
        )

    async def handle_post_message(self, request: Request) -> Response:
        claims = authenticate_request(request, self.verifier)

        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Request body must be JSON")

        self.accept(request.query_params.get(SESSION_QUERY_PARAM), claims.tenant_id, payload)
        return Response(content="Accepted", status_code=202, media_type="text/plain")


async def _close_stream(events: AsyncGenerator[dict[str, str], None]) -> None:
    # Runs after the response ends; releases a stream left suspended mid-send.
    await events.aclose()
