"""
Scoped external-API client.

Every call resolves the tenant from the ambient request context, loads that
tenant's credential for the adapter's provider and sends one upstream request.
An authorization failure triggers at most one refresh and one retry.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Mapping

import httpx
import structlog

from tenant_relay.auth.context import get_current_tenant_id
from tenant_relay.connectors.auth.oauth2 import OAuth2Manager
from tenant_relay.connectors.auth.token_store import CredentialRecord, TokenStore
from tenant_relay.kernel.errors import NotConnectedError, UnauthorizedError, UpstreamError

logger = structlog.get_logger()


class ProviderAdapter(ABC):
    """Provider-specific URL, auth and response rules for ScopedAPIClient."""

    provider: str
    requires_account_id: bool = False

    @property
    @abstractmethod
    def base_url(self) -> str: ...

    def build_url(self, record: CredentialRecord, endpoint: str) -> str:
        return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def required_params(self) -> dict[str, Any]:
        """Query parameters every request carries unless the caller sets them."""
        return {}

    def encode_params(self, params: Mapping[str, Any]) -> list[tuple[str, str]]:
        encoded: list[tuple[str, str]] = []
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                encoded.extend((key, stringify_param(item)) for item in value)
            else:
                encoded.append((key, stringify_param(value)))
        return encoded

    def auth_headers(self, record: CredentialRecord) -> dict[str, str]:
        return {"Authorization": f"Bearer {record.access_token}"}

    def auth(self, record: CredentialRecord) -> httpx.Auth | None:
        """httpx auth flow for providers that do not take a bearer header."""
        return None

    def request_kwargs(self, body: Any) -> dict[str, Any]:
        """Encode the request body; JSON unless the provider says otherwise."""
        if body is None:
            return {}
        return {"json": body}

    def is_auth_failure(self, response: httpx.Response) -> bool:
        return response.status_code == 401

    def parse(self, response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError:
            return response.text


def stringify_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class ScopedAPIClient:
    """
    Tenant-scoped HTTP client for one provider.

    Refresh policy: one authorization failure with a refresh token present
    leads to exactly one refresh and one retry. A second authorization failure
    raises UnauthorizedError and leaves the credential untouched. Other non-2xx
    answers raise UpstreamError without retry.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: TokenStore,
        oauth: OAuth2Manager,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self._adapter = adapter
        self._store = store
        self._oauth = oauth
        self._transport = transport
        self._timeout = timeout

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def provider(self) -> str:
        return self._adapter.provider

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        tenant_id = get_current_tenant_id()
        record = await self._load(tenant_id)

        response = await self._send(record, endpoint, method, body, params)

        if self._adapter.is_auth_failure(response):
            if not record.can_refresh:
                logger.warning(
                    "Upstream rejected credential without refresh token",
                    tenant_id=tenant_id,
                    provider=self.provider,
                    status_code=response.status_code,
                )
                raise UnauthorizedError(provider=self.provider, meta={"status": response.status_code})

            await self._oauth.refresh_rejected(record)
            record = await self._load(tenant_id)
            response = await self._send(record, endpoint, method, body, params)

            if self._adapter.is_auth_failure(response):
                logger.warning(
                    "Upstream rejected refreshed credential",
                    tenant_id=tenant_id,
                    provider=self.provider,
                    status_code=response.status_code,
                )
                raise UnauthorizedError(provider=self.provider, meta={"status": response.status_code})

        if not response.is_success:
            logger.warning(
                "Upstream request failed",
                tenant_id=tenant_id,
                provider=self.provider,
                endpoint=endpoint,
                status_code=response.status_code,
            )
            raise UpstreamError(
                status=response.status_code,
                body=response.text,
                provider=self.provider,
                message=f"{self.provider} API error: {response.status_code}",
            )

        return self._adapter.parse(response)

    async def _load(self, tenant_id: str) -> CredentialRecord:
        record = await self._store.get(tenant_id, self.provider)
        if record is None or not record.access_token:
            raise NotConnectedError(provider=self.provider)
        if self._adapter.requires_account_id and not record.provider_account_id:
            raise NotConnectedError(
                provider=self.provider,
                message=f"{self.provider} is connected without an account id. Please reconnect it.",
            )
        return record

    async def _send(
        self,
        record: CredentialRecord,
        endpoint: str,
        method: str,
        body: Any,
        params: Mapping[str, Any] | None,
    ) -> httpx.Response:
        merged = dict(self._adapter.required_params())
        merged.update(params or {})

        headers = {"Accept": "application/json"}
        headers.update(self._adapter.auth_headers(record))

        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            response = await client.request(
                method.upper(),
                self._adapter.build_url(record, endpoint),
                params=self._adapter.encode_params(merged),
                headers=headers,
                auth=self._adapter.auth(record),
                **self._adapter.request_kwargs(body),
            )

        logger.debug(
            "Upstream request",
            provider=self.provider,
            method=method.upper(),
            endpoint=endpoint,
            status_code=response.status_code,
        )
        return response
