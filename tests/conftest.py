"""
Test Configuration and Fixtures

Shared fixtures for the tenant-relay test suite: settings, token store,
session token issuer/verifier, and httpx mock transports.
"""

import os
from collections.abc import Callable

import httpx
import structlog
import pytest

# Set test environment variables before importing the package.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("SESSION_JWT_SECRET", "test-session-secret")
os.environ.setdefault("TOKEN_STORE_BACKEND", "memory")

from tenant_relay.auth.session_jwt import SessionTokenIssuer, SessionTokenVerifier  # noqa: E402
from tenant_relay.config import Settings, get_settings  # noqa: E402
from tenant_relay.connectors.auth.oauth2 import OAuth2Manager, OAuth2Provider  # noqa: E402
from tenant_relay.connectors.auth.token_store import CredentialRecord, InMemoryTokenStore  # noqa: E402

TEST_SECRET = "test-session-secret"


# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (may use real services)")
    config.addinivalue_line("markers", "api: API endpoint tests")
    config.addinivalue_line("markers", "mcp: MCP server/transport tests")


def pytest_collection_modifyitems(config, items):
    """
    Auto-assign tier markers:
    - tests/integration/** => integration
    - everything else      => unit
    """
    for item in items:
        path = str(getattr(item, "fspath", ""))
        if item.get_closest_marker("integration") or item.get_closest_marker("unit"):
            continue
        if "/tests/integration/" in path:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.reset_defaults()


# =============================================================================
# SETTINGS & AUTH
# =============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        session_jwt_secret=TEST_SECRET,
        qb_client_id="qb_client",
        qb_client_secret="qb_secret",
        google_client_id="google_client",
        google_client_secret="google_secret",
        anthropic_api_key="sk-test",
        mcp_quickbooks_url="https://qb.example.com/sse",
        mcp_gmail_url="https://gmail.example.com/sse",
    )


@pytest.fixture
def issuer() -> SessionTokenIssuer:
    return SessionTokenIssuer(TEST_SECRET, issuer="backend", ttl_seconds=3600)


@pytest.fixture
def qb_verifier() -> SessionTokenVerifier:
    return SessionTokenVerifier(TEST_SECRET, audience="quickbooks-mcp", issuer="backend")


# =============================================================================
# CREDENTIALS
# =============================================================================


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def qb_record() -> CredentialRecord:
    return CredentialRecord(
        tenant_id="u1",
        provider="quickbooks",
        access_token="A1",
        refresh_token="R1",
        provider_account_id="realm_1",
        expires_at=None,
    )


@pytest.fixture
def make_oauth() -> Callable[..., OAuth2Manager]:
    """Build an OAuth2Manager with QuickBooks and Gmail configured against a mock transport."""

    def _make(store, handler=None) -> OAuth2Manager:
        transport = httpx.MockTransport(handler) if handler else None
        manager = OAuth2Manager(store, transport=transport)
        manager.configure_provider(OAuth2Provider.QUICKBOOKS, client_id="qb_client", client_secret="qb_secret")
        manager.configure_provider(OAuth2Provider.GMAIL, client_id="google_client", client_secret="google_secret")
        return manager

    return _make
