"""
Authentication System

Provides OAuth2 and credential storage for connectors.
"""

from tenant_relay.connectors.auth.oauth2 import (
    OAuth2Manager,
    OAuth2Provider,
    OAuth2ProviderConfig,
    configure_oauth,
)
from tenant_relay.connectors.auth.token_store import (
    CredentialRecord,
    InMemoryTokenStore,
    PostgresTokenStore,
    TokenStore,
    create_token_store,
)

__all__ = [
    "OAuth2Manager",
    "OAuth2Provider",
    "OAuth2ProviderConfig",
    "configure_oauth",
    "CredentialRecord",
    "InMemoryTokenStore",
    "PostgresTokenStore",
    "TokenStore",
    "create_token_store",
]
