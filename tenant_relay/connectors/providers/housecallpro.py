"""Housecall Pro field-service API."""

from __future__ import annotations

from typing import Any, Mapping

from tenant_relay.connectors.client import ProviderAdapter, stringify_param

HOUSECALLPRO_API_URL = "https://api.housecallpro.com"


class HousecallProAdapter(ProviderAdapter):
    """
    Housecall Pro takes list filters as repeated `key[]` parameters.

    Credentials are API keys stored per tenant; there is no refresh grant, so
    an authorization failure is terminal.
    """

    provider = "housecallpro"

    @property
    def base_url(self) -> str:
        return HOUSECALLPRO_API_URL

    def encode_params(self, params: Mapping[str, Any]) -> list[tuple[str, str]]:
        encoded: list[tuple[str, str]] = []
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                encoded.extend((f"{key}[]", stringify_param(item)) for item in value)
            else:
                encoded.append((key, stringify_param(value)))
        return encoded
