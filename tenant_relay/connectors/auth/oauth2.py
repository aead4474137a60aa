"""
OAuth2 Manager

Handles authorization-code exchange and refresh-token grants for the OAuth
providers behind the tool servers, and keeps the token store current.
"""

import asyncio
from enum import Enum
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
from pydantic import BaseModel, Field

from tenant_relay.config import Settings, get_settings
from tenant_relay.connectors.auth.token_store import CredentialRecord, TokenStore
from tenant_relay.kernel.errors import RefreshFailedError, UnauthorizedError, UpstreamError
from tenant_relay.kernel.time import epoch_seconds

logger = structlog.get_logger()


class OAuth2Provider(str, Enum):
    """Supported OAuth2 providers (value doubles as the token store key)."""

    QUICKBOOKS = "quickbooks"
    GMAIL = "gmail"


class OAuth2ProviderConfig(BaseModel):
    """Configuration for an OAuth2 provider."""

    provider: OAuth2Provider
    client_id: str
    client_secret: str

    # URLs
    authorization_url: str
    token_url: str
    revoke_url: str | None = None

    # Scopes
    default_scopes: list[str] = Field(default_factory=list)

    # Provider quirks
    supports_refresh: bool = True

    # Extra parameters
    extra_auth_params: dict[str, str] = Field(default_factory=dict)


# Pre-configured provider settings
PROVIDER_CONFIGS: dict[OAuth2Provider, dict[str, Any]] = {
    OAuth2Provider.QUICKBOOKS: {
        "authorization_url": "https://appcenter.intuit.com/connect/oauth2",
        "token_url": "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        "revoke_url": "https://developer.api.intuit.com/v2/oauth2/tokens/revoke",
        "default_scopes": ["com.intuit.quickbooks.accounting"],
        "extra_auth_params": {},
    },
    OAuth2Provider.GMAIL: {
        "authorization_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "revoke_url": "https://oauth2.googleapis.com/revoke",
        "default_scopes": [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/gmail.send",
        ],
        "extra_auth_params": {
            "access_type": "offline",
            "prompt": "consent",
        },
    },
}


def _provider_key(provider: OAuth2Provider | str) -> str:
    return provider.value if isinstance(provider, OAuth2Provider) else str(provider)


class OAuth2Manager:
    """
    OAuth2 credential lifecycle for all tool servers.

    Handles:
    - Authorization URL generation
    - Code exchange (creates the credential record)
    - Refresh (rotates the credential record, once per rejected token)
    - Disconnect

    Client authentication against token endpoints uses HTTP Basic.

    Example usage:
        manager = OAuth2Manager(store)
        manager.configure_provider(OAuth2Provider.QUICKBOOKS, client_id=..., client_secret=...)

        record = await manager.exchange_code(
            provider=OAuth2Provider.QUICKBOOKS,
            tenant_id="u1",
            code="authorization_code",
            redirect_uri="https://example.com/callback",
            provider_account_id="realm_123",
        )

        record = await manager.refresh_credential(record)
    """

    def __init__(
        self,
        store: TokenStore,
        provider_configs: dict[OAuth2Provider, OAuth2ProviderConfig] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        """
        Initialize OAuth2 manager.

        Args:
            store: Credential storage updated on exchange and refresh
            provider_configs: Override default provider configurations
            transport: Optional httpx transport (tests inject a MockTransport)
            timeout: Token endpoint timeout in seconds
        """
        self._store = store
        self._transport = transport
        self._timeout = timeout
        self._configs: dict[str, OAuth2ProviderConfig] = {}
        self._refresh_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._refresh_waiters: dict[tuple[str, str], int] = {}

        # Load default configs
        for provider, defaults in PROVIDER_CONFIGS.items():
            self._configs[provider.value] = OAuth2ProviderConfig(
                provider=provider,
                client_id="",  # Must be set via configure_provider()
                client_secret="",
                **defaults,
            )

        # Apply overrides
        if provider_configs:
            for provider, config in provider_configs.items():
                self._configs[_provider_key(provider)] = config

    @property
    def store(self) -> TokenStore:
        return self._store

    def configure_provider(
        self,
        provider: OAuth2Provider | str,
        client_id: str,
        client_secret: str,
        **kwargs: Any,
    ) -> None:
        """
        Configure a provider with credentials.

        Args:
            provider: OAuth2 provider
            client_id: OAuth2 client ID
            client_secret: OAuth2 client secret
            **kwargs: Additional provider-specific settings
        """
        key = _provider_key(provider)
        if key not in self._configs:
            raise ValueError(f"Unknown provider: {key}")

        config = self._configs[key]
        config.client_id = client_id
        config.client_secret = client_secret

        for name, value in kwargs.items():
            if hasattr(config, name):
                setattr(config, name, value)

    def supports_refresh(self, provider: OAuth2Provider | str) -> bool:
        config = self._configs.get(_provider_key(provider))
        return bool(config and config.client_id and config.supports_refresh)

    def get_authorization_url(
        self,
        provider: OAuth2Provider | str,
        redirect_uri: str,
        state: str,
        scopes: list[str] | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """
        Generate OAuth2 authorization URL.

        Args:
            provider: OAuth2 provider
            redirect_uri: Callback URL after authorization
            state: CSRF protection state parameter
            scopes: Override default scopes
            extra_params: Additional URL parameters

        Returns:
            Authorization URL
        """
        config = self._get_config(provider)

        params = {
            "client_id": config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
        }

        scope_list = scopes or config.default_scopes
        if scope_list:
            params["scope"] = " ".join(scope_list)

        params.update(config.extra_auth_params)

        if extra_params:
            params.update(extra_params)

        return f"{config.authorization_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        provider: OAuth2Provider | str,
        tenant_id: str,
        code: str,
        redirect_uri: str,
        provider_account_id: str | None = None,
    ) -> CredentialRecord:
        """
        Exchange an authorization code and store the resulting credential.

        Args:
            provider: OAuth2 provider
            tenant_id: Tenant the credential belongs to
            code: Authorization code from callback
            redirect_uri: Same redirect URI used in authorization
            provider_account_id: Provider-side account handle (QuickBooks realmId)

        Returns:
            The stored CredentialRecord
        """
        config = self._get_config(provider)

        response = await self._post_token_endpoint(config, {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })

        if not response.is_success:
            logger.error(
                "OAuth code exchange failed",
                provider=config.provider.value,
                status_code=response.status_code,
            )
            raise UpstreamError(
                status=response.status_code,
                body=response.text,
                provider=config.provider.value,
                message=f"{config.provider.value} code exchange failed: {response.status_code}",
                code="connector.exchange_failed",
            )

        token_data = response.json()
        record = CredentialRecord(
            tenant_id=tenant_id,
            provider=config.provider.value,
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            provider_account_id=provider_account_id,
            expires_at=self._expires_at(token_data),
        )
        await self._store.upsert(record)

        logger.info(
            "OAuth credential connected",
            tenant_id=tenant_id,
            provider=record.provider,
            expires_at=record.expires_at,
        )
        return record

    async def refresh_credential(self, record: CredentialRecord) -> CredentialRecord:
        """
        Exchange the record's refresh token for a new access token and store it.

        The refresh token is kept unless the provider rotates it; the provider
        account handle is never changed.

        Raises:
            UnauthorizedError: the credential cannot be renewed
            RefreshFailedError: the token endpoint answered non-2xx
        """
        if not record.refresh_token:
            raise UnauthorizedError(
                provider=record.provider,
                message=f"{record.provider} credential has no refresh token",
                meta={"refreshable": False},
            )
        if not self.supports_refresh(record.provider):
            raise UnauthorizedError(
                provider=record.provider,
                message=f"{record.provider} does not support token refresh",
                meta={"refreshable": False},
            )

        config = self._configs[record.provider]
        logger.info("Attempting token refresh", tenant_id=record.tenant_id, provider=record.provider)

        response = await self._post_token_endpoint(config, {
            "grant_type": "refresh_token",
            "refresh_token": record.refresh_token,
        })

        if not response.is_success:
            logger.error(
                "Token refresh failed",
                tenant_id=record.tenant_id,
                provider=record.provider,
                status_code=response.status_code,
            )
            raise RefreshFailedError(
                provider=record.provider,
                status=response.status_code,
                body=response.text,
            )

        token_data = response.json()
        refreshed = CredentialRecord(
            tenant_id=record.tenant_id,
            provider=record.provider,
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or record.refresh_token,
            provider_account_id=record.provider_account_id,
            expires_at=self._expires_at(token_data),
        )
        await self._store.upsert(refreshed)

        logger.info(
            "Tokens refreshed",
            tenant_id=record.tenant_id,
            provider=record.provider,
            expires_at=refreshed.expires_at,
            rotated=bool(token_data.get("refresh_token")),
        )
        return refreshed

    async def refresh_rejected(self, rejected: CredentialRecord) -> CredentialRecord:
        """
        Refresh after `rejected.access_token` failed authorization.

        Concurrent callers for the same (tenant, provider) are serialised; a
        caller that finds the rejected token already replaced reuses the newer
        credential instead of refreshing again.
        """
        key = (rejected.tenant_id, rejected.provider)
        lock = self._refresh_locks.setdefault(key, asyncio.Lock())
        self._refresh_waiters[key] = self._refresh_waiters.get(key, 0) + 1

        try:
            async with lock:
                latest = await self._store.get(rejected.tenant_id, rejected.provider)
                if latest and latest.access_token and latest.access_token != rejected.access_token:
                    logger.debug(
                        "Credential already refreshed by a concurrent call",
                        tenant_id=rejected.tenant_id,
                        provider=rejected.provider,
                    )
                    return latest
                return await self.refresh_credential(latest or rejected)
        finally:
            # Last caller for this key drops its lock.
            self._refresh_waiters[key] -= 1
            if not self._refresh_waiters[key]:
                del self._refresh_waiters[key]
                del self._refresh_locks[key]

    async def is_connected(self, tenant_id: str, provider: OAuth2Provider | str) -> bool:
        record = await self._store.get(tenant_id, _provider_key(provider))
        return bool(record and record.access_token)

    async def disconnect(self, tenant_id: str, provider: OAuth2Provider | str) -> bool:
        """Explicit disconnect: the only path that deletes a credential."""
        deleted = await self._store.delete(tenant_id, _provider_key(provider))
        if deleted:
            logger.info("OAuth credential disconnected", tenant_id=tenant_id, provider=_provider_key(provider))
        return deleted

    async def _post_token_endpoint(
        self,
        config: OAuth2ProviderConfig,
        data: dict[str, str],
    ) -> httpx.Response:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            return await client.post(
                config.token_url,
                data=data,
                auth=httpx.BasicAuth(config.client_id, config.client_secret),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )

    def _get_config(self, provider: OAuth2Provider | str) -> OAuth2ProviderConfig:
        """Get provider configuration."""
        key = _provider_key(provider)
        if key not in self._configs:
            raise ValueError(f"Unknown provider: {key}")

        config = self._configs[key]
        if not config.client_id:
            raise ValueError(f"Provider {key} not configured")

        return config

    @staticmethod
    def _expires_at(data: dict[str, Any]) -> int | None:
        expires_in = data.get("expires_in")
        if not expires_in:
            return None
        return epoch_seconds() + int(expires_in)


def configure_oauth(store: TokenStore, settings: Settings | None = None, **kwargs: Any) -> OAuth2Manager:
    """
    Build an OAuth2 manager with provider credentials from settings.

    Extra keyword arguments are passed to the OAuth2Manager constructor.
    """
    settings = settings or get_settings()
    manager = OAuth2Manager(store, timeout=settings.http_timeout_seconds, **kwargs)

    if settings.qb_client_id:
        manager.configure_provider(
            OAuth2Provider.QUICKBOOKS,
            client_id=settings.qb_client_id,
            client_secret=settings.qb_client_secret,
            default_scopes=[settings.qb_scope],
        )

    if settings.google_client_id:
        manager.configure_provider(
            OAuth2Provider.GMAIL,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        )

    return manager
