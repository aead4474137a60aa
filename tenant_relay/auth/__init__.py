"""
Authentication module for tenant-relay tool servers.

Provides session JWT minting/verification and request-scoped tenant context.
"""

from tenant_relay.auth.context import (
    ContextState,
    RequestContext,
    get_current_context,
    get_current_tenant_id,
    run_with_context,
    tenant_context,
)
from tenant_relay.auth.middleware import (
    AUTHORIZATION_HEADER,
    SESSION_HEADER,
    authenticate_request,
    extract_session_token,
)
from tenant_relay.auth.session_jwt import (
    SessionTokenClaims,
    SessionTokenIssuer,
    SessionTokenVerifier,
)

__all__ = [
    # Context
    "ContextState",
    "RequestContext",
    "get_current_context",
    "get_current_tenant_id",
    "run_with_context",
    "tenant_context",
    # Middleware
    "AUTHORIZATION_HEADER",
    "SESSION_HEADER",
    "authenticate_request",
    "extract_session_token",
    # Session JWT
    "SessionTokenClaims",
    "SessionTokenIssuer",
    "SessionTokenVerifier",
]
