"""
Session authentication for tool server endpoints.

Accepted headers (first non-empty wins):
1. Authorization: Bearer <token>
2. X-Session: <token>

The token is verified exactly once per request. Any failure raises a single
AuthVerificationFailedError before the handler does any work.
"""

from collections.abc import Mapping

import structlog
from starlette.requests import HTTPConnection

from tenant_relay.auth.session_jwt import SessionTokenClaims, SessionTokenVerifier
from tenant_relay.kernel.errors import AuthVerificationFailedError

logger = structlog.get_logger()

# Headers
AUTHORIZATION_HEADER = "Authorization"
SESSION_HEADER = "X-Session"
SESSION_HEADERS = (AUTHORIZATION_HEADER, SESSION_HEADER)

_BEARER_PREFIX = "bearer "


def extract_session_token(headers: Mapping[str, str]) -> str | None:
    """
    Pull the raw session token out of request headers.

    Args:
        headers: Request headers (case-insensitive mapping for Starlette requests)

    Returns:
        The token without its `Bearer ` prefix, or None when no header is set
    """
    for name in SESSION_HEADERS:
        raw = (headers.get(name) or "").strip()
        if not raw:
            continue
        if raw.lower().startswith(_BEARER_PREFIX):
            raw = raw[len(_BEARER_PREFIX):].strip()
        return raw or None
    return None


def authenticate_request(
    connection: HTTPConnection,
    verifier: SessionTokenVerifier,
) -> SessionTokenClaims:
    """
    Authenticate an inbound tool server request.

    Raises:
        AuthVerificationFailedError: token missing or invalid
    """
    token = extract_session_token(connection.headers)
    if not token:
        logger.info("Session token missing", path=connection.url.path)
        raise AuthVerificationFailedError(meta={"reason": "missing_token"})

    try:
        claims = verifier.verify(token)
    except AuthVerificationFailedError as exc:
        logger.info(
            "Session token rejected",
            path=connection.url.path,
            audience=verifier.audience,
            reason=exc.meta.get("reason"),
        )
        raise

    return claims
