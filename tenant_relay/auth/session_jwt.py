"""
Session JWT (orchestrator -> tool server auth).

The orchestrator mints one short-lived token per tool server for every chat
turn. Each tool server only accepts tokens whose audience names it, which is
what keeps a tenant routed to the server the orchestrator intended.

Claims:
- userId: tenant identity (str; legacy numeric ids are normalised to str)
- aud: tool server audience (e.g. "quickbooks-mcp")
- iss: minting service (defaults to "backend")
- iat/exp: issued/expiry (short-lived)
"""

from __future__ import annotations

from datetime import datetime, timedelta

import jwt
import structlog
from pydantic import BaseModel

from tenant_relay.config import Settings, get_settings
from tenant_relay.kernel.errors import AuthVerificationFailedError
from tenant_relay.kernel.time import from_epoch, utc_now

logger = structlog.get_logger()

JWT_ALGORITHM = "HS256"
TENANT_CLAIM = "userId"


class SessionTokenClaims(BaseModel):
    """Verified claims of a session token."""

    tenant_id: str
    audience: str
    issuer: str
    exp: datetime
    iat: datetime


def get_session_jwt_secret(settings: Settings | None = None) -> str | None:
    settings = settings or get_settings()
    if settings.session_jwt_secret:
        return settings.session_jwt_secret

    # Dev fallback so local stacks work without extra env.
    # In production, you MUST set SESSION_JWT_SECRET.
    if settings.environment in ("development", "test"):
        logger.warning("SESSION_JWT_SECRET not configured, using derived secret (dev only)")
        return "insecure-default-secret-change-me::session"

    logger.error("SESSION_JWT_SECRET not configured in production")
    return None


class SessionTokenIssuer:
    """Mints session tokens scoped to a single tool server."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "backend",
        ttl_seconds: int = 3600,
    ):
        if not secret:
            raise ValueError("A signing secret is required to mint session tokens")
        self._secret = secret
        self._issuer = issuer
        self._ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SessionTokenIssuer":
        settings = settings or get_settings()
        secret = get_session_jwt_secret(settings)
        if not secret:
            raise RuntimeError("SESSION_JWT_SECRET is required to mint session tokens")
        return cls(
            secret,
            issuer=settings.session_jwt_issuer,
            ttl_seconds=settings.session_ttl_seconds,
        )

    def mint(
        self,
        tenant_id: str,
        audience: str,
        *,
        ttl_seconds: int | None = None,
        now: datetime | None = None,
    ) -> str:
        now = now or utc_now()
        expiry = now + timedelta(seconds=int(ttl_seconds or self._ttl_seconds))

        payload = {
            TENANT_CLAIM: str(tenant_id),
            "aud": audience,
            "iss": self._issuer,
            "iat": int(now.timestamp()),
            "exp": int(expiry.timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)


class SessionTokenVerifier:
    """Validates session tokens for exactly one audience."""

    def __init__(
        self,
        secret: str,
        *,
        audience: str,
        issuer: str = "backend",
        leeway_seconds: int = 0,
    ):
        if not secret:
            raise ValueError("A signing secret is required to verify session tokens")
        self._secret = secret
        self._audience = audience
        self._issuer = issuer
        self._leeway = leeway_seconds

    @classmethod
    def from_settings(cls, audience: str, settings: Settings | None = None) -> "SessionTokenVerifier":
        settings = settings or get_settings()
        secret = get_session_jwt_secret(settings)
        if not secret:
            raise RuntimeError("SESSION_JWT_SECRET is required to verify session tokens")
        return cls(secret, audience=audience, issuer=settings.session_jwt_issuer)

    @property
    def audience(self) -> str:
        return self._audience

    def verify(self, token: str) -> SessionTokenClaims:
        """Verify signature, issuer, audience and expiry.

        Raises:
            AuthVerificationFailedError: on any failure.
        """
        if not token:
            raise AuthVerificationFailedError(meta={"reason": "missing_token"})

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[JWT_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={"require": ["exp", "iat", "aud", "iss"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthVerificationFailedError(meta={"reason": "expired"}) from None
        except jwt.InvalidAudienceError:
            raise AuthVerificationFailedError(meta={"reason": "audience"}) from None
        except jwt.InvalidIssuerError:
            raise AuthVerificationFailedError(meta={"reason": "issuer"}) from None
        except jwt.InvalidTokenError:
            raise AuthVerificationFailedError(meta={"reason": "invalid"}) from None

        tenant_id = payload.get(TENANT_CLAIM)
        if tenant_id is None or str(tenant_id) == "":
            raise AuthVerificationFailedError(meta={"reason": "missing_tenant"})

        return SessionTokenClaims(
            tenant_id=str(tenant_id),
            audience=self._audience,
            issuer=str(payload["iss"]),
            exp=from_epoch(payload["exp"]),
            iat=from_epoch(payload["iat"]),
        )
