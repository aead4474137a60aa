"""Twilio Programmable Messaging API."""

from __future__ import annotations

from typing import Any

import httpx

from tenant_relay.connectors.auth.token_store import CredentialRecord
from tenant_relay.connectors.client import ProviderAdapter

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class TwilioAdapter(ProviderAdapter):
    """
    Twilio authenticates with HTTP Basic (account SID, auth token) and takes
    form-encoded bodies. The account SID is the provider account id and the
    auth token is stored as the access token.
    """

    provider = "twilio"
    requires_account_id = True

    @property
    def base_url(self) -> str:
        return TWILIO_API_URL

    def build_url(self, record: CredentialRecord, endpoint: str) -> str:
        return f"{self.base_url}/Accounts/{record.provider_account_id}/{endpoint.lstrip('/')}"

    def auth_headers(self, record: CredentialRecord) -> dict[str, str]:
        return {}

    def auth(self, record: CredentialRecord) -> httpx.Auth:
        return httpx.BasicAuth(record.provider_account_id or "", record.access_token)

    def request_kwargs(self, body: Any) -> dict[str, Any]:
        if body is None:
            return {}
        return {"data": body}
