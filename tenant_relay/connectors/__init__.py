"""
Connectors

Tenant-scoped access to external business APIs: credential storage, OAuth
refresh, and provider adapters for the shared API client.
"""
