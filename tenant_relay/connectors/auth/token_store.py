"""
Token Storage

Provides encrypted storage for one OAuth2 credential set per (tenant, provider).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from cryptography.fernet import Fernet
from pydantic import BaseModel, Field

from tenant_relay.kernel.time import epoch_seconds, utc_now

if TYPE_CHECKING:
    from tenant_relay.config import Settings

logger = structlog.get_logger()


class CredentialRecord(BaseModel):
    """OAuth2 credential for one tenant and provider."""

    tenant_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    provider_account_id: str | None = None
    # Epoch seconds; None means "valid until a 401 proves otherwise".
    expires_at: int | None = None

    def is_expired(self, now: int | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else epoch_seconds()) >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


class StoredCredential(BaseModel):
    """Credential data as stored at rest."""

    # Identity
    tenant_id: str
    provider: str

    # Encrypted token data
    access_token_encrypted: bytes
    refresh_token_encrypted: bytes | None = None

    # Metadata (not encrypted)
    provider_account_id: str | None = None
    expires_at: int | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TokenStore(ABC):
    """
    Abstract base class for credential storage.

    Implementations should handle:
    - Encryption at rest
    - One row per (tenant_id, provider), last write wins
    - Atomic per-row writes (no cross-row locking)
    """

    @abstractmethod
    async def get(self, tenant_id: str, provider: str) -> CredentialRecord | None:
        """
        Retrieve the credential for a tenant and provider.

        Returns:
            CredentialRecord or None if not found
        """

    @abstractmethod
    async def upsert(self, record: CredentialRecord) -> None:
        """
        Insert or overwrite all fields of the record's (tenant_id, provider) row.
        """

    @abstractmethod
    async def delete(self, tenant_id: str, provider: str) -> bool:
        """
        Delete the credential for a tenant and provider.

        Returns:
            True if deleted, False if not found
        """

    @abstractmethod
    async def list_expiring(self, within_seconds: int = 3600) -> list[CredentialRecord]:
        """
        List credentials expiring within the given window, soonest first.
        """


class _FernetMixin:
    _fernet: Fernet

    def _encrypt(self, data: str) -> bytes:
        """Encrypt string data."""
        return self._fernet.encrypt(data.encode())

    def _decrypt(self, data: bytes) -> str:
        """Decrypt to string."""
        return self._fernet.decrypt(data).decode()


class InMemoryTokenStore(_FernetMixin, TokenStore):
    """
    In-memory credential storage for development/testing.

    Tokens are encrypted in memory but not persisted.
    """

    def __init__(self, encryption_key: bytes | None = None):
        """
        Initialize in-memory token store.

        Args:
            encryption_key: 32-byte url-safe base64 Fernet key.
                           If not provided, a new key is generated
        """
        self._fernet = Fernet(encryption_key or Fernet.generate_key())
        self._rows: dict[tuple[str, str], StoredCredential] = {}

    def __len__(self) -> int:
        return len(self._rows)

    async def get(self, tenant_id: str, provider: str) -> CredentialRecord | None:
        stored = self._rows.get((tenant_id, provider))
        if not stored:
            return None
        return self._to_record(stored)

    async def upsert(self, record: CredentialRecord) -> None:
        key = (record.tenant_id, record.provider)
        existing = self._rows.get(key)

        self._rows[key] = StoredCredential(
            tenant_id=record.tenant_id,
            provider=record.provider,
            access_token_encrypted=self._encrypt(record.access_token),
            refresh_token_encrypted=self._encrypt(record.refresh_token) if record.refresh_token else None,
            provider_account_id=record.provider_account_id,
            expires_at=record.expires_at,
            created_at=existing.created_at if existing else utc_now(),
            updated_at=utc_now(),
        )

        logger.debug(
            "Stored credential",
            tenant_id=record.tenant_id,
            provider=record.provider,
            expires_at=record.expires_at,
        )

    async def delete(self, tenant_id: str, provider: str) -> bool:
        if self._rows.pop((tenant_id, provider), None) is not None:
            logger.debug("Deleted credential", tenant_id=tenant_id, provider=provider)
            return True
        return False

    async def list_expiring(self, within_seconds: int = 3600) -> list[CredentialRecord]:
        threshold = epoch_seconds() + within_seconds
        expiring = [
            self._to_record(stored)
            for stored in self._rows.values()
            if stored.expires_at is not None and stored.expires_at <= threshold
        ]
        return sorted(expiring, key=lambda r: r.expires_at or 0)

    def _to_record(self, stored: StoredCredential) -> CredentialRecord:
        return CredentialRecord(
            tenant_id=stored.tenant_id,
            provider=stored.provider,
            access_token=self._decrypt(stored.access_token_encrypted),
            refresh_token=self._decrypt(stored.refresh_token_encrypted) if stored.refresh_token_encrypted else None,
            provider_account_id=stored.provider_account_id,
            expires_at=stored.expires_at,
        )


CREDENTIALS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS oauth_credentials (
    tenant_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    access_token_encrypted BYTEA NOT NULL,
    refresh_token_encrypted BYTEA,
    provider_account_id TEXT,
    expires_at BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (tenant_id, provider)
)
"""


class PostgresTokenStore(_FernetMixin, TokenStore):
    """
    PostgreSQL-backed credential storage.

    Tokens are encrypted using Fernet symmetric encryption.
    """

    def __init__(self, encryption_key: bytes):
        """
        Initialize PostgreSQL token store.

        Args:
            encryption_key: 32-byte url-safe base64 Fernet key
        """
        self._fernet = Fernet(encryption_key)

    async def ensure_schema(self) -> None:
        """Create the credentials table if it does not exist."""
        from sqlalchemy import text

        from tenant_relay.db.client import get_db_session

        async with get_db_session() as session:
            await session.execute(text(CREDENTIALS_TABLE_DDL))

    async def get(self, tenant_id: str, provider: str) -> CredentialRecord | None:
        from sqlalchemy import text

        from tenant_relay.db.client import get_db_session

        async with get_db_session() as session:
            query = text("""
                SELECT
                    access_token_encrypted,
                    refresh_token_encrypted,
                    provider_account_id,
                    expires_at
                FROM oauth_credentials
                WHERE tenant_id = :tenant_id
                  AND provider = :provider
            """)

            result = await session.execute(query, {
                "tenant_id": tenant_id,
                "provider": provider,
            })
            row = result.fetchone()

        if not row:
            return None

        return CredentialRecord(
            tenant_id=tenant_id,
            provider=provider,
            access_token=self._decrypt(row.access_token_encrypted),
            refresh_token=self._decrypt(row.refresh_token_encrypted) if row.refresh_token_encrypted else None,
            provider_account_id=row.provider_account_id,
            expires_at=row.expires_at,
        )

    async def upsert(self, record: CredentialRecord) -> None:
        from sqlalchemy import text

        from tenant_relay.db.client import get_db_session

        access_encrypted = self._encrypt(record.access_token)
        refresh_encrypted = self._encrypt(record.refresh_token) if record.refresh_token else None

        async with get_db_session() as session:
            query = text("""
                INSERT INTO oauth_credentials (
                    tenant_id, provider,
                    access_token_encrypted, refresh_token_encrypted,
                    provider_account_id, expires_at, updated_at
                ) VALUES (
                    :tenant_id, :provider,
                    :access_token, :refresh_token,
                    :provider_account_id, :expires_at, NOW()
                )
                ON CONFLICT (tenant_id, provider) DO UPDATE SET
                    access_token_encrypted = :access_token,
                    refresh_token_encrypted = :refresh_token,
                    provider_account_id = :provider_account_id,
                    expires_at = :expires_at,
                    updated_at = NOW()
            """)

            await session.execute(query, {
                "tenant_id": record.tenant_id,
                "provider": record.provider,
                "access_token": access_encrypted,
                "refresh_token": refresh_encrypted,
                "provider_account_id": record.provider_account_id,
                "expires_at": record.expires_at,
            })

        logger.debug(
            "Stored credential in PostgreSQL",
            tenant_id=record.tenant_id,
            provider=record.provider,
        )

    async def delete(self, tenant_id: str, provider: str) -> bool:
        from sqlalchemy import text

        from tenant_relay.db.client import get_db_session

        async with get_db_session() as session:
            query = text("""
                DELETE FROM oauth_credentials
                WHERE tenant_id = :tenant_id
                  AND provider = :provider
            """)

            result = await session.execute(query, {
                "tenant_id": tenant_id,
                "provider": provider,
            })

        return result.rowcount > 0

    async def list_expiring(self, within_seconds: int = 3600) -> list[CredentialRecord]:
        from sqlalchemy import text

        from tenant_relay.db.client import get_db_session

        threshold = epoch_seconds() + within_seconds

        async with get_db_session() as session:
            query = text("""
                SELECT
                    tenant_id, provider,
                    access_token_encrypted, refresh_token_encrypted,
                    provider_account_id, expires_at
                FROM oauth_credentials
                WHERE expires_at IS NOT NULL
                  AND expires_at <= :threshold
                ORDER BY expires_at ASC
            """)

            result = await session.execute(query, {"threshold": threshold})
            rows = result.fetchall()

        return [
            CredentialRecord(
                tenant_id=row.tenant_id,
                provider=row.provider,
                access_token=self._decrypt(row.access_token_encrypted),
                refresh_token=self._decrypt(row.refresh_token_encrypted) if row.refresh_token_encrypted else None,
                provider_account_id=row.provider_account_id,
                expires_at=row.expires_at,
            )
            for row in rows
        ]


def create_token_store(settings: "Settings | None" = None) -> TokenStore:
    """Build the token store selected by `settings` (defaults to get_settings())."""
    from tenant_relay.config import get_settings

    settings = settings or get_settings()
    key = settings.token_encryption_key.encode() if settings.token_encryption_key else None

    if settings.token_store_backend == "postgres":
        if not key:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY is required for the postgres token store")
        return PostgresTokenStore(encryption_key=key)

    if not key and settings.environment == "production":
        logger.warning("TOKEN_ENCRYPTION_KEY not configured, generating an ephemeral key")
    return InMemoryTokenStore(encryption_key=key)
