"""Gmail REST API (v1) for the authenticated mailbox."""

from __future__ import annotations

from tenant_relay.connectors.client import ProviderAdapter

GMAIL_API_URL = "https://gmail.googleapis.com/gmail/v1/users/me"


class GmailAdapter(ProviderAdapter):
    provider = "gmail"

    @property
    def base_url(self) -> str:
        return GMAIL_API_URL
