"""
Tests for the WalletKeyVault public API.
"""
import asyncio
import os
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock

import pytest

from navigator_wallet.vault import (
    MemoryKeyRecordStore,
    VaultConfig,
    WalletKeyVault,
)
from navigator_wallet.vault.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    NotFound,
    ValidationError,
)

from conftest import PIN, WRONG_PIN, make_service


class TestCreateWalletKey:
    """Tests for storing new wallet keys."""

    @pytest.mark.asyncio
    async def test_create_returns_record_id(self, vault, store, private_key):
        record_id = await vault.create_wallet_key("wallet-1", private_key, PIN)
        stored = await store.get_by_wallet_id("wallet-1")
        assert stored.id == record_id
        assert stored.wallet_id == "wallet-1"
        assert stored.master_key_id == "v1"

    @pytest.mark.asyncio
    async def test_links_wallet(self, store, service, private_key):
        linker = AsyncMock()
        vault = WalletKeyVault(store, service, wallet_linker=linker)
        record_id = await vault.create_wallet_key("wallet-1", private_key, PIN)
        linker.assert_awaited_once_with("wallet-1", record_id)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        with pytest.raises(ValidationError):
            await vault.create_wallet_key("wallet-1", os.urandom(32), PIN)

    @pytest.mark.asyncio
    async def test_bad_pin_rejected(self, vault, store, private_key):
        with pytest.raises(ValidationError):
            await vault.create_wallet_key("wallet-1", private_key, "12345")
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_missing_wallet_id(self, vault, private_key):
        with pytest.raises(ValidationError):
            await vault.create_wallet_key("", private_key, PIN)


class TestSignOrDecrypt:
    """Tests for unlocking wallet keys."""

    @pytest.mark.asyncio
    async def test_roundtrip(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key

    @pytest.mark.asyncio
    async def test_wrong_pin(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        with pytest.raises(AuthenticationFailure):
            await vault.sign_or_decrypt("wallet-1", WRONG_PIN)

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, vault):
        with pytest.raises(NotFound):
            await vault.sign_or_decrypt("missing", PIN)

    @pytest.mark.asyncio
    async def test_unknown_master_key(self, vault, store, private_key):
        record = await make_service("v9").encrypt_private_key(
            private_key, PIN, wallet_id="wallet-1",
        )
        await store.create(record)
        with pytest.raises(ValidationError):
            await vault.sign_or_decrypt("wallet-1", PIN)

    @pytest.mark.asyncio
    async def test_survives_restart(self, store, master_key, private_key):
        """A new process with the same master key still unlocks the wallet."""
        first = WalletKeyVault(store, make_service("v1", master_key))
        await first.create_wallet_key("wallet-1", private_key, PIN)
        second = WalletKeyVault(store, make_service("v1", master_key))
        assert await second.sign_or_decrypt("wallet-1", PIN) == private_key

    @pytest.mark.asyncio
    async def test_rewraps_retired_master_key_on_unlock(self, store, private_key):
        old = make_service("v1")
        vault = WalletKeyVault(store, old)
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        vault.activate(make_service("v2"))

        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key
        record = await store.get_by_wallet_id("wallet-1")
        assert record.master_key_id == "v2"
        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key

    @pytest.mark.asyncio
    async def test_rewrap_on_unlock_disabled(self, store, private_key):
        vault = WalletKeyVault(store, make_service("v1"), rewrap_on_unlock=False)
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        vault.activate(make_service("v2"))

        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key
        record = await store.get_by_wallet_id("wallet-1")
        assert record.master_key_id == "v1"


class TestVerifyPin:
    """Tests for PIN checks."""

    @pytest.mark.asyncio
    async def test_verify(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        assert await vault.verify_pin("wallet-1", PIN) is True
        assert await vault.verify_pin("wallet-1", WRONG_PIN) is False
        assert await vault.verify_pin("wallet-1", "abc") is False

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, vault):
        with pytest.raises(NotFound):
            await vault.verify_pin("missing", PIN)


class TestChangePin:
    """Tests for PIN changes."""

    @pytest.mark.asyncio
    async def test_change_pin(self, vault, store, private_key):
        record_id = await vault.create_wallet_key("wallet-1", private_key, PIN)
        before = await store.get_by_wallet_id("wallet-1")

        await vault.change_pin("wallet-1", PIN, "654321")

        after = await store.get_by_wallet_id("wallet-1")
        assert after.id == record_id
        assert after.data_key_id != before.data_key_id
        assert after.pin_salt != before.pin_salt
        assert await vault.sign_or_decrypt("wallet-1", "654321") == private_key
        with pytest.raises(AuthenticationFailure):
            await vault.sign_or_decrypt("wallet-1", PIN)

    @pytest.mark.asyncio
    async def test_wrong_old_pin_keeps_record(self, vault, store, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        before = await store.get_by_wallet_id("wallet-1")
        with pytest.raises(AuthenticationFailure):
            await vault.change_pin("wallet-1", WRONG_PIN, "654321")
        assert await store.get_by_wallet_id("wallet-1") == before

    @pytest.mark.asyncio
    async def test_bad_new_pin(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        with pytest.raises(ValidationError):
            await vault.change_pin("wallet-1", PIN, "12")


class TestDeleteWalletKey:
    """Tests for removing wallet keys."""

    @pytest.mark.asyncio
    async def test_delete(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        assert await vault.delete_wallet_key("wallet-1") is True
        assert await vault.delete_wallet_key("wallet-1") is False
        with pytest.raises(NotFound):
            await vault.sign_or_decrypt("wallet-1", PIN)


class TestFromConfig:
    """Tests for building a vault from configuration."""

    @pytest.mark.asyncio
    async def test_registers_every_key_version(self, private_key):
        config = VaultConfig(
            master_keys={"v1": os.urandom(32), "v2": os.urandom(32)},
            active_key_id="v2",
            kdf_iterations=10_000,
            crypto_workers=2,
        )
        vault = WalletKeyVault.from_config(MemoryKeyRecordStore(), config)
        assert vault.active_service.master_key_id == "v2"
        assert vault.service_for("v1").master_key_id == "v1"
        assert vault.service_for("v1").executor is vault.active_service.executor

        await vault.create_wallet_key("wallet-1", private_key, PIN)
        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key
        vault.close()

    def test_misconfigured_env_fails(self, monkeypatch):
        monkeypatch.setenv("WALLET_MASTER_KEY_v1", "not-base64!")
        monkeypatch.setenv("WALLET_ACTIVE_MASTER_KEY_ID", "v1")
        with pytest.raises(ConfigurationError):
            WalletKeyVault.from_config(MemoryKeyRecordStore())

    @pytest.mark.asyncio
    async def test_close_shuts_down_pool(self):
        config = VaultConfig(
            master_keys={"v1": os.urandom(32)},
            active_key_id="v1",
            crypto_workers=1,
        )
        async with WalletKeyVault.from_config(MemoryKeyRecordStore(), config) as vault:
            executor = vault.active_service.executor
            assert executor.submit(int).result() == 0
        with pytest.raises(RuntimeError):
            executor.submit(int)

    def test_close_leaves_injected_pool(self, store):
        with ThreadPoolExecutor(max_workers=1) as executor:
            vault = WalletKeyVault(store, make_service("v1", executor=executor))
            vault.close()
            assert executor.submit(int).result() == 0


class TestMasterKeyEpochs:
    """Tests for the registry of master key services."""

    def test_same_key_material_replaces(self, vault, master_key):
        twin = make_service("v1", master_key)
        vault.register_service(twin)
        assert vault.service_for("v1") is twin
        assert vault.active_service is twin

    def test_other_key_material_rejected(self, vault, service):
        with pytest.raises(ConfigurationError):
            vault.register_service(make_service("v1"))
        assert vault.service_for("v1") is service

    @pytest.mark.asyncio
    async def test_rotation_cannot_replace_retired_key(self, store, private_key):
        vault = WalletKeyVault(store, make_service("v1"), rewrap_on_unlock=False)
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        vault.activate(make_service("v2"))

        with pytest.raises(ConfigurationError):
            await vault.rotate_master_key("wallet-1", PIN, make_service("v1"))
        assert await vault.sign_or_decrypt("wallet-1", PIN) == private_key


class TestWalletLocks:
    """Tests for per-wallet write serialization."""

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, vault, private_key):
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        await vault.change_pin("wallet-1", PIN, "654321")
        await vault.delete_wallet_key("wallet-1")
        assert vault._locks == {}

    @pytest.mark.asyncio
    async def test_waiters_keep_lock_across_delete(self, vault, private_key):
        """Tasks queued behind a delete still exclude later arrivals."""
        await vault.create_wallet_key("wallet-1", private_key, PIN)
        inside = 0
        peak = 0

        async def critical():
            nonlocal inside, peak
            async with vault.wallet_lock("wallet-1"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0)
                inside -= 1

        async with vault.wallet_lock("wallet-1"):
            deleting = asyncio.create_task(vault.delete_wallet_key("wallet-1"))
            await asyncio.sleep(0)
            queued = asyncio.create_task(critical())
            await asyncio.sleep(0)
        await deleting
        late = asyncio.create_task(critical())
        await asyncio.gather(queued, late)

        assert peak == 1
        assert vault._locks == {}
