"""
Tool server application factory.

Builds one FastAPI app per tool server: health routes, the SSE transport
routes, security middleware and the shared exception handlers.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenant_relay import __version__
from tenant_relay.api.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from tenant_relay.auth.middleware import AUTHORIZATION_HEADER, SESSION_HEADER
from tenant_relay.auth.session_jwt import SessionTokenVerifier
from tenant_relay.config import Settings, get_settings
from tenant_relay.connectors.auth.oauth2 import OAuth2Manager, configure_oauth
from tenant_relay.connectors.auth.token_store import PostgresTokenStore, TokenStore, create_token_store
from tenant_relay.connectors.client import ScopedAPIClient
from tenant_relay.kernel.http.errors import register_exception_handlers
from tenant_relay.kernel.logging import configure_logging
from tenant_relay.mcp.registry import SessionRegistry
from tenant_relay.mcp.transport import SseTransport
from tenant_relay.tools import get_tool_server_definition

logger = structlog.get_logger()


def create_app(
    server_name: str,
    *,
    settings: Settings | None = None,
    store: TokenStore | None = None,
    oauth: OAuth2Manager | None = None,
    registry: SessionRegistry | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the app for one tool server.

    Args:
        server_name: Key in TOOL_SERVERS (quickbooks, housecallpro, gmail, sms)
        settings: Override settings (defaults to get_settings())
        store: Credential store (defaults to the configured backend)
        oauth: OAuth manager (defaults to one configured from settings)
        registry: Session registry (defaults to in-memory)
        http_transport: Outbound httpx transport, for tests
    """
    settings = settings or get_settings()
    definition = get_tool_server_definition(server_name)

    store = store or create_token_store(settings)
    oauth = oauth or configure_oauth(store, settings, transport=http_transport)
    client = ScopedAPIClient(
        definition.adapter_factory(settings),
        store,
        oauth,
        transport=http_transport,
        timeout=settings.http_timeout_seconds,
    )
    server = definition.build(client, settings)
    verifier = SessionTokenVerifier.from_settings(definition.audience, settings)
    transport = SseTransport(server, verifier, registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan - startup and shutdown."""
        configure_logging(settings)
        logger.info(
            "Starting tool server",
            server=definition.name,
            audience=definition.audience,
            version=__version__,
            token_store=type(store).__name__,
        )

        uses_db = isinstance(store, PostgresTokenStore)
        if uses_db:
            from tenant_relay.db.client import close_db, init_db

            await init_db()
            await store.ensure_schema()

        yield

        logger.info("Shutting down tool server", server=definition.name, active_sessions=len(transport.registry))
        if uses_db:
            await close_db()

    app = FastAPI(
        title=f"{definition.name} tool server",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[AUTHORIZATION_HEADER, SESSION_HEADER, "Content-Type"],
        expose_headers=["X-Request-ID"],
    )

    register_exception_handlers(app)

    async def health() -> dict:
        return {"ok": True, "service": definition.service}

    app.add_api_route("/", health, methods=["GET"], tags=["Health"])
    app.add_api_route("/health", health, methods=["GET"], tags=["Health"])
    app.add_api_route("/sse", transport.handle_sse, methods=["GET"], tags=["MCP"])
    app.add_api_route(transport.message_path, transport.handle_post_message, methods=["POST"], tags=["MCP"])

    app.state.tool_server = server
    app.state.transport = transport
    app.state.token_store = store
    app.state.oauth = oauth

    return app
