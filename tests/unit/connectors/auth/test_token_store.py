"""
Unit tests for credential storage.
"""

import pytest
from cryptography.fernet import Fernet

from tenant_relay.connectors.auth.token_store import (
    CredentialRecord,
    InMemoryTokenStore,
    PostgresTokenStore,
    create_token_store,
)
from tenant_relay.kernel.time import epoch_seconds

pytestmark = pytest.mark.unit


# =============================================================================
# CredentialRecord
# =============================================================================


class TestCredentialRecord:
    def test_no_expiry_is_never_expired(self, qb_record):
        assert qb_record.is_expired() is False

    def test_expiry_in_the_past(self, qb_record):
        record = qb_record.model_copy(update={"expires_at": epoch_seconds() - 1})
        assert record.is_expired() is True

    def test_expiry_against_explicit_clock(self, qb_record):
        record = qb_record.model_copy(update={"expires_at": 1_000})
        assert record.is_expired(now=999) is False
        assert record.is_expired(now=1_000) is True

    def test_can_refresh(self, qb_record):
        assert qb_record.can_refresh is True
        assert qb_record.model_copy(update={"refresh_token": None}).can_refresh is False


# =============================================================================
# InMemoryTokenStore
# =============================================================================


class TestInMemoryTokenStore:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, token_store):
        assert await token_store.get("u1", "quickbooks") is None

    @pytest.mark.asyncio
    async def test_upsert_then_get(self, token_store, qb_record):
        await token_store.upsert(qb_record)

        assert await token_store.get("u1", "quickbooks") == qb_record

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, token_store, qb_record):
        await token_store.upsert(qb_record)
        await token_store.upsert(qb_record)

        assert len(token_store) == 1
        assert await token_store.get("u1", "quickbooks") == qb_record

    @pytest.mark.asyncio
    async def test_upsert_overwrites_every_field(self, token_store, qb_record):
        await token_store.upsert(qb_record)
        replacement = CredentialRecord(
            tenant_id="u1",
            provider="quickbooks",
            access_token="A2",
            refresh_token=None,
            provider_account_id="realm_2",
            expires_at=123,
        )
        await token_store.upsert(replacement)

        assert await token_store.get("u1", "quickbooks") == replacement

    @pytest.mark.asyncio
    async def test_rows_are_keyed_by_tenant_and_provider(self, token_store, qb_record):
        await token_store.upsert(qb_record)
        await token_store.upsert(qb_record.model_copy(update={"tenant_id": "u2", "access_token": "B1"}))
        await token_store.upsert(qb_record.model_copy(update={"provider": "gmail", "access_token": "G1"}))

        assert len(token_store) == 3
        assert (await token_store.get("u1", "quickbooks")).access_token == "A1"
        assert (await token_store.get("u2", "quickbooks")).access_token == "B1"
        assert (await token_store.get("u1", "gmail")).access_token == "G1"

    @pytest.mark.asyncio
    async def test_delete(self, token_store, qb_record):
        await token_store.upsert(qb_record)

        assert await token_store.delete("u1", "quickbooks") is True
        assert await token_store.delete("u1", "quickbooks") is False
        assert await token_store.get("u1", "quickbooks") is None

    @pytest.mark.asyncio
    async def test_tokens_are_encrypted_at_rest(self, qb_record):
        key = Fernet.generate_key()
        store = InMemoryTokenStore(encryption_key=key)
        await store.upsert(qb_record)

        stored = store._rows[("u1", "quickbooks")]
        assert b"A1" not in stored.access_token_encrypted
        assert Fernet(key).decrypt(stored.access_token_encrypted) == b"A1"
        assert Fernet(key).decrypt(stored.refresh_token_encrypted) == b"R1"

    @pytest.mark.asyncio
    async def test_list_expiring_sorted_and_filtered(self, token_store, qb_record):
        now = epoch_seconds()
        await token_store.upsert(qb_record.model_copy(update={"tenant_id": "late", "expires_at": now + 1800}))
        await token_store.upsert(qb_record.model_copy(update={"tenant_id": "soon", "expires_at": now + 60}))
        await token_store.upsert(qb_record.model_copy(update={"tenant_id": "far", "expires_at": now + 86400}))
        await token_store.upsert(qb_record.model_copy(update={"tenant_id": "never", "expires_at": None}))

        expiring = await token_store.list_expiring(within_seconds=3600)

        assert [record.tenant_id for record in expiring] == ["soon", "late"]


# =============================================================================
# Factory
# =============================================================================


class TestCreateTokenStore:
    def test_memory_backend_by_default(self, monkeypatch):
        monkeypatch.setenv("TOKEN_STORE_BACKEND", "memory")

        assert isinstance(create_token_store(), InMemoryTokenStore)

    def test_postgres_backend_requires_key(self, monkeypatch):
        monkeypatch.setenv("TOKEN_STORE_BACKEND", "postgres")
        monkeypatch.delenv("TOKEN_ENCRYPTION_KEY", raising=False)

        with pytest.raises(RuntimeError):
            create_token_store()

    def test_postgres_backend(self, monkeypatch):
        monkeypatch.setenv("TOKEN_STORE_BACKEND", "postgres")
        monkeypatch.setenv("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())

        assert isinstance(create_token_store(), PostgresTokenStore)

    def test_explicit_settings_override_environment(self, monkeypatch, settings):
        monkeypatch.setenv("TOKEN_STORE_BACKEND", "memory")
        postgres = settings.model_copy(
            update={"token_store_backend": "postgres", "token_encryption_key": Fernet.generate_key().decode()}
        )

        assert isinstance(create_token_store(postgres), PostgresTokenStore)
