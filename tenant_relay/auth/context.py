"""
Request-scoped tenant context.

Every tool server stream owns exactly one RequestContext:

    UNBOUND --bind(tenant_id)--> BOUND --close()--> CLOSED

The context is bound once, right after the session token is verified, and is
never reassigned. Code that calls external APIs reads the tenant through
`get_current_tenant_id()`, which resolves the context installed by
`run_with_context()` / `tenant_context()` for the running task only. asyncio
copies the ContextVar state into every task, so concurrent streams never see
each other's binding.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import structlog

from tenant_relay.kernel.errors import MissingContextError
from tenant_relay.kernel.time import utc_now

T = TypeVar("T")


class ContextState(str, Enum):
    """Lifecycle of a stream's context."""

    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class RequestContext:
    """
    Tenant identity bound to one transport session.

    Usage:
        ctx = RequestContext(session_id="abc")
        ctx.bind(claims.tenant_id)
        await run_with_context(ctx, handle_message, message)
        ctx.close()
    """

    def __init__(self, session_id: str | None = None):
        self._session_id = session_id
        self._tenant_id: str | None = None
        self._state = ContextState.UNBOUND
        self._bound_at: datetime | None = None

    @classmethod
    def bound(cls, tenant_id: str, session_id: str | None = None) -> "RequestContext":
        ctx = cls(session_id=session_id)
        ctx.bind(tenant_id)
        return ctx

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def state(self) -> ContextState:
        return self._state

    @property
    def bound_at(self) -> datetime | None:
        return self._bound_at

    @property
    def is_bound(self) -> bool:
        return self._state is ContextState.BOUND

    @property
    def tenant_id(self) -> str:
        """Tenant identity. Only readable while BOUND."""
        if self._state is not ContextState.BOUND or self._tenant_id is None:
            raise MissingContextError(
                message=f"Request context is {self._state.value}",
                meta={"session_id": self._session_id} if self._session_id else None,
            )
        return self._tenant_id

    def bind(self, tenant_id: str) -> None:
        if self._state is not ContextState.UNBOUND:
            raise RuntimeError(f"Cannot bind a context that is {self._state.value}")
        if not tenant_id:
            raise ValueError("tenant_id is required")
        self._tenant_id = tenant_id
        self._state = ContextState.BOUND
        self._bound_at = utc_now()

    def close(self) -> None:
        """Release the binding. Idempotent."""
        self._state = ContextState.CLOSED

    def __repr__(self) -> str:
        return (
            f"RequestContext(session={self._session_id}, "
            f"tenant={self._tenant_id}, state={self._state.value})"
        )


_current_context: ContextVar[RequestContext | None] = ContextVar("tenant_request_context", default=None)


def get_current_context() -> RequestContext:
    """Return the context bound to the running task.

    Raises:
        MissingContextError: nothing bound, or the binding was closed
    """
    ctx = _current_context.get()
    if ctx is None:
        raise MissingContextError()
    if not ctx.is_bound:
        raise MissingContextError(
            message=f"Request context is {ctx.state.value}",
            meta={"session_id": ctx.session_id} if ctx.session_id else None,
        )
    return ctx


def get_current_tenant_id() -> str:
    return get_current_context().tenant_id


@contextmanager
def tenant_context(ctx: RequestContext) -> Iterator[RequestContext]:
    """Install `ctx` for the duration of the block, then restore the previous one."""
    log_fields: dict[str, Any] = {"tenant_id": ctx.tenant_id}
    if ctx.session_id:
        log_fields["mcp_session_id"] = ctx.session_id
    token = _current_context.set(ctx)
    try:
        with structlog.contextvars.bound_contextvars(**log_fields):
            yield ctx
    finally:
        _current_context.reset(token)


async def run_with_context(
    ctx: RequestContext,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Await `fn(*args, **kwargs)` with `ctx` as the ambient tenant context."""
    with tenant_context(ctx):
        return await fn(*args, **kwargs)
