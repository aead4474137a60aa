"""
Provider adapters for the scoped API client.
"""

from tenant_relay.connectors.providers.gmail import GmailAdapter
from tenant_relay.connectors.providers.housecallpro import HousecallProAdapter
from tenant_relay.connectors.providers.quickbooks import QuickBooksAdapter
from tenant_relay.connectors.providers.twilio import TwilioAdapter

__all__ = [
    "GmailAdapter",
    "HousecallProAdapter",
    "QuickBooksAdapter",
    "TwilioAdapter",
]
