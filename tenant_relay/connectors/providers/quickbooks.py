"""QuickBooks Online accounting API."""

from __future__ import annotations

from typing import Any

import httpx

from tenant_relay.config import Settings, get_settings
from tenant_relay.connectors.auth.token_store import CredentialRecord
from tenant_relay.connectors.client import ProviderAdapter

QUICKBOOKS_PRODUCTION_URL = "https://quickbooks.api.intuit.com"
QUICKBOOKS_SANDBOX_URL = "https://sandbox-quickbooks.api.intuit.com"
DEFAULT_MINOR_VERSION = 75

# Intuit fault code for an invalid or expired access token.
AUTH_FAULT_CODE = "3100"


class QuickBooksAdapter(ProviderAdapter):
    """URLs are `{base}/v3/company/{realmId}/{endpoint}` with `minorversion` merged in."""

    provider = "quickbooks"
    requires_account_id = True

    def __init__(self, *, use_sandbox: bool = False, minor_version: int = DEFAULT_MINOR_VERSION):
        self.use_sandbox = use_sandbox
        self.minor_version = minor_version

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "QuickBooksAdapter":
        settings = settings or get_settings()
        return cls(use_sandbox=settings.qb_use_sandbox, minor_version=settings.qb_minor_version)

    @property
    def base_url(self) -> str:
        return QUICKBOOKS_SANDBOX_URL if self.use_sandbox else QUICKBOOKS_PRODUCTION_URL

    def build_url(self, record: CredentialRecord, endpoint: str) -> str:
        return f"{self.base_url}/v3/company/{record.provider_account_id}/{endpoint.lstrip('/')}"

    def required_params(self) -> dict[str, Any]:
        return {"minorversion": self.minor_version}

    def is_auth_failure(self, response: httpx.Response) -> bool:
        if response.status_code == 401:
            return True
        return response.status_code == 400 and AUTH_FAULT_CODE in response.text
