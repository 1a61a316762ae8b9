"""
Integration tests for the vault facade and its startup sequence.
"""

import asyncio
import base64
import os
import shutil
import tempfile

import numpy as np
import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from journal_guard.config.loader import VaultConfig
from journal_guard.core.errors import (
    BudgetExhaustedError,
    IntegrityError,
    InvalidPassphraseError,
    MigrationError,
    VaultLockedError,
)
from journal_guard.core.keys import KeyState
from journal_guard.core.metrics import ANALYTICS_SCOPE, FREE_TEXT_SCOPE, SanitizedMetric
from journal_guard.core.migrations import MigrationRegistry
from journal_guard.core.privacy_budget import BudgetPolicy
from journal_guard.core.schema_steps import (
    ENTRY_STORE,
    LEGACY_ENTRY_STORE,
    move_legacy_entry_store,
    stamp_record_version,
)
from journal_guard.core.vault import Vault
from journal_guard.storage.models import decode_record, encode_record
from journal_guard.storage.repository import RecordRepository, fetch_audit_events, initialize_schema

PASSPHRASE = "correct-horse"


def _registry_with(step) -> MigrationRegistry:
    """Shipped steps plus *step* as a keyed 3->4 increment."""
    registry = MigrationRegistry()
    registry.register(1, 2, "move entries")(move_legacy_entry_store)
    registry.register(2, 3, "stamp versions")(stamp_record_version)
    registry.register(3, 4, "keyed step", requires_key=True)(step)
    return registry


class GrantAll:
    def is_consent_granted(self, user_id, scope):
        return scope in (ANALYTICS_SCOPE, FREE_TEXT_SCOPE)


class TestVault:
    """Test the full open, setup, use and reopen cycle."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "vault.db")
        self.config = VaultConfig(db_path=self.db_path, kdf_iterations=1000)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def _ready_vault(self, **kwargs) -> Vault:
        vault = await Vault.open(self.config, rng=np.random.default_rng(3), **kwargs)
        await vault.setup(PASSPHRASE)
        return vault

    @pytest.mark.asyncio
    async def test_fresh_vault(self):
        """Test a new database opens at the current schema, uninitialized and locked."""
        vault = await Vault.open(self.config)

        assert vault.schema_version == 3
        assert not vault.is_initialized
        assert vault.state is KeyState.LOCKED
        assert vault.records.is_open

    @pytest.mark.asyncio
    async def test_records_survive_reopen(self):
        """Test data written in one session is readable after unlocking the next."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "2026-03-14", b"pain 5, short walk")
        await vault.lock()

        reopened = await Vault.open(self.config)
        assert reopened.is_initialized
        with pytest.raises(VaultLockedError):
            await reopened.get(ENTRY_STORE, "2026-03-14")

        await reopened.unlock(PASSPHRASE)
        assert await reopened.get(ENTRY_STORE, "2026-03-14") == b"pain 5, short walk"

    @pytest.mark.asyncio
    async def test_open_migrates_old_layout(self):
        """Test records in the old entry store are moved before the gate opens."""
        vault = await self._ready_vault()
        await vault.put(LEGACY_ENTRY_STORE, "old", b"from version 1")
        await vault.lock()

        repository = RecordRepository(self.db_path)
        repository.set_meta("schema_version", "1")

        reopened = await Vault.open(self.config)
        assert reopened.schema_version == 3
        await reopened.unlock(PASSPHRASE)
        assert await reopened.get(ENTRY_STORE, "old") == b"from version 1"
        assert await reopened.get(LEGACY_ENTRY_STORE, "old") is None

    @pytest.mark.asyncio
    async def test_unmarked_database_with_records_is_migrated(self):
        """Test a database from before version markers is treated as version 1."""
        initialize_schema(self.db_path)
        RecordRepository(self.db_path).write_record(
            LEGACY_ENTRY_STORE, "e1", {"iv": "AAAAAAAAAAAAAAAA", "data": "AAAA"}
        )

        vault = await Vault.open(self.config)

        assert vault.schema_version == 3
        assert RecordRepository(self.db_path).list_keys(ENTRY_STORE) == ["e1"]

    @pytest.mark.asyncio
    async def test_collect_then_release(self):
        """Test sanitized metrics are stored and released under the budget."""
        config = VaultConfig(
            db_path=self.db_path,
            kdf_iterations=1000,
            budget=BudgetPolicy(epsilon_limit=0.2, per_release_epsilon=0.2),
        )
        vault = await Vault.open(config, rng=np.random.default_rng(3), audit_key=b"a" * 32)
        await vault.setup(PASSPHRASE)

        metric = await vault.collect("u1", {"pain_level": 7, "notes": "mail x@y.com"}, GrantAll())
        assert isinstance(metric, SanitizedMetric)
        assert await vault.records.keys("metrics") == [metric.record_key]

        released = await vault.release("u1", {"pain_level": 7.0, "mood": 4.0})
        assert set(released) == {"pain_level", "mood"}
        with pytest.raises(BudgetExhaustedError):
            await vault.release("u1", {"pain_level": 7.0})

        events = fetch_audit_events(db_path=self.db_path)
        assert [e["event_type"] for e in events] == ["dp_budget_rejected", "dp_budget_consumption"]

    @pytest.mark.asyncio
    async def test_wipe(self):
        """Test wipe removes every record and the passphrase metadata."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "k", b"x")
        await vault.release("u1", {"mood": 5.0})

        await vault.wipe()

        assert vault.state is KeyState.LOCKED
        assert RecordRepository(self.db_path).store_counts() == {}
        reopened = await Vault.open(self.config)
        assert not reopened.is_initialized
        assert await reopened.budget.remaining("u1") == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_keyed_migration_deferred_until_unlock(self):
        """Test a step needing the key waits for unlock and queued reads run after it."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "k", b"before the key step")
        await vault.lock()
        old_nonce = RecordRepository(self.db_path).read_record(ENTRY_STORE, "k")["nonce"]

        def reseal(stores, context):
            for records in stores.values():
                for key, wire in list(records.items()):
                    plaintext = context.cipher.open(decode_record(wire))
                    records[key] = encode_record(context.cipher.seal(plaintext))
            return stores

        reopened = await Vault.open(self.config, registry=_registry_with(reseal))
        assert reopened.schema_version == 3
        assert reopened.migration_pending

        queued = asyncio.create_task(reopened.get(ENTRY_STORE, "k"))
        await asyncio.sleep(0.01)
        assert not queued.done()

        await reopened.unlock(PASSPHRASE)

        assert reopened.schema_version == 4
        assert not reopened.migration_pending
        assert await queued == b"before the key step"
        assert RecordRepository(self.db_path).read_record(ENTRY_STORE, "k")["nonce"] != old_nonce

    @pytest.mark.asyncio
    async def test_failed_deferred_migration_locks_again(self):
        """Test a keyed step failing at unlock reports the last completed version."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "k", b"x")
        await vault.lock()

        def explode(stores, context):
            raise RuntimeError("cannot rewrite")

        reopened = await Vault.open(self.config, registry=_registry_with(explode))
        with pytest.raises(MigrationError) as exc_info:
            await reopened.unlock(PASSPHRASE)

        assert exc_info.value.last_completed == 3
        assert reopened.state is KeyState.LOCKED
        assert reopened.migration_pending
        assert RecordRepository(self.db_path).get_schema_version() == 3

    @pytest.mark.asyncio
    async def test_newer_schema_blocks_open(self):
        """Test a database from a newer build is not opened."""
        await self._ready_vault()
        RecordRepository(self.db_path).set_meta("schema_version", "9")

        with pytest.raises(MigrationError):
            await Vault.open(self.config)

    @pytest.mark.asyncio
    async def test_change_passphrase_reencrypts_records(self):
        """Test every record, legacy included, opens under the new passphrase only."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "a", b"alpha")
        async with vault.keys.key_session() as vault_key:
            iv = os.urandom(12)
            data = AESGCM(vault_key.material).encrypt(iv, b"beta", None)
        RecordRepository(self.db_path).write_record(ENTRY_STORE, "b", {
            "iv": base64.b64encode(iv).decode("ascii"),
            "data": base64.b64encode(data).decode("ascii"),
        })

        assert await vault.change_passphrase(PASSPHRASE, "battery-staple-42") == 2
        assert await vault.get(ENTRY_STORE, "a") == b"alpha"
        await vault.lock()

        reopened = await Vault.open(self.config)
        with pytest.raises(InvalidPassphraseError):
            await reopened.unlock(PASSPHRASE)
        await reopened.unlock("battery-staple-42")
        assert await reopened.get(ENTRY_STORE, "a") == b"alpha"
        assert await reopened.get(ENTRY_STORE, "b") == b"beta"
        assert RecordRepository(self.db_path).read_record(ENTRY_STORE, "b")["formatTag"] == "current"

    @pytest.mark.asyncio
    async def test_change_passphrase_with_unreadable_record_changes_nothing(self):
        """Test an unreadable record aborts the change with the old passphrase intact."""
        vault = await self._ready_vault()
        await vault.put(ENTRY_STORE, "a", b"alpha")
        RecordRepository(self.db_path).write_record(ENTRY_STORE, "broken", {"iv": "AAAA", "data": "AAAA"})
        before = RecordRepository(self.db_path).read_record(ENTRY_STORE, "a")

        with pytest.raises(IntegrityError):
            await vault.change_passphrase(PASSPHRASE, "battery-staple-42")

        assert RecordRepository(self.db_path).read_record(ENTRY_STORE, "a") == before
        await vault.lock()
        reopened = await Vault.open(self.config)
        await reopened.unlock(PASSPHRASE)
        assert await reopened.get(ENTRY_STORE, "a") == b"alpha"
