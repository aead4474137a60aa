from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class RelayError(Exception):
    """Base typed error for tenant-relay.

    Goals:
    - Stable `code` for programmatic handling across clients.
    - Human-readable `message` for UI surfaces and tool results.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            # Keep `detail` for compatibility with FastAPI error surfaces.
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload

    def to_tool_error(self) -> dict[str, Any]:
        """Structured payload delivered in a tool result."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.meta:
            error["meta"] = self.meta
        return {"error": error}


class AuthVerificationFailedError(RelayError):
    """Session token missing, malformed, expired, or issued for someone else."""

    def __init__(
        self,
        *,
        message: str = "Invalid session",
        code: str = "auth.invalid_session",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=401, meta=meta)


class MissingContextError(RelayError):
    """No tenant identity bound. Always a wiring bug, never user-triggered."""

    def __init__(
        self,
        *,
        message: str = "Missing request context",
        code: str = "context.missing",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=500, meta=meta)


class NotConnectedError(RelayError):
    def __init__(
        self,
        *,
        provider: str,
        message: str | None = None,
        code: str = "connector.not_connected",
    ):
        super().__init__(
            code=code,
            message=message or f"{provider} is not connected. Please connect it first.",
            status_code=409,
            meta={"provider": provider},
        )
        self.provider = provider


class UnauthorizedError(RelayError):
    """Credential present but rejected after the single refresh attempt."""

    def __init__(
        self,
        *,
        provider: str,
        message: str | None = None,
        code: str = "connector.unauthorized",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(
            code=code,
            message=message or f"{provider} rejected the stored credential",
            status_code=401,
            meta={"provider": provider, **(meta or {})},
        )
        self.provider = provider


class RefreshFailedError(RelayError):
    def __init__(
        self,
        *,
        provider: str,
        status: int,
        body: str,
        code: str = "connector.refresh_failed",
    ):
        super().__init__(
            code=code,
            message=f"{provider} token refresh failed: {status}",
            status_code=502,
            meta={"provider": provider, "status": status, "body": body},
        )
        self.provider = provider
        self.status = status
        self.body = body


class UpstreamError(RelayError):
    def __init__(
        self,
        *,
        status: int,
        body: str,
        provider: str | None = None,
        message: str | None = None,
        code: str = "upstream.error",
    ):
        meta: dict[str, Any] = {"status": status, "body": body}
        if provider:
            meta["provider"] = provider
        super().__init__(
            code=code,
            message=message or f"Upstream service error: {status}",
            status_code=502,
            meta=meta,
        )
        self.provider = provider
        self.status = status
        self.body = body


class NoActiveTransportError(RelayError):
    def __init__(
        self,
        *,
        message: str = "No active transport for session",
        code: str = "mcp.no_active_transport",
    ):
        super().__init__(code=code, message=message, status_code=400)
