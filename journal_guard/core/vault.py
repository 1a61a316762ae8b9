"""
Vault facade and startup sequence.

Opening a vault runs, in order: schema creation, metadata load, schema
migrations, then opens the record store gate. Everything issued against the
store before that point waits on the gate.

Migrations that need the vault key cannot run while the vault is locked. They
are deferred and finish inside the first successful unlock; the gate stays
closed until then.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional

import numpy as np

from journal_guard.config.loader import VaultConfig
from journal_guard.storage.models import EncryptedRecord
from journal_guard.storage.repository import (
    RecordRepository,
    VAULT_METADATA_KEY,
    initialize_schema,
)
from .audit import SqliteAuditSink
from .errors import MigrationError, VaultLockedError
from .keys import Key, KeyManager, KeyState, VaultMetadata
from .metrics import CollectionResult, ConsentProvider, MetricsCollector
from .migrations import MigrationEngine, MigrationRegistry
from .privacy_budget import NoisyValue, PrivacyBudgetManager, SqliteLedgerStore
from .record_store import EncryptedRecordStore, UpgradeReport
from .schema_steps import DEFAULT_REGISTRY
from .sensitivity import DEFAULT_SENSITIVITY_TABLE, SensitivityTable
from .tasks import run_to_completion

logger = logging.getLogger(__name__)


class Vault:
    """Single entry point wiring keys, records, migrations and analytics."""

    def __init__(
        self,
        config: VaultConfig,
        repository: RecordRepository,
        keys: KeyManager,
        records: EncryptedRecordStore,
        budget: PrivacyBudgetManager,
        collector: MetricsCollector,
        engine: Optional[MigrationEngine] = None,
    ):
        self.config = config
        self.repository = repository
        self.keys = keys
        self.records = records
        self.budget = budget
        self.collector = collector
        self.engine = engine or MigrationEngine(DEFAULT_REGISTRY)
        self.schema_version: Optional[int] = None

    @classmethod
    async def open(
        cls,
        config: Optional[VaultConfig] = None,
        table: Optional[SensitivityTable] = None,
        audit_key: Optional[bytes] = None,
        rng: Optional[np.random.Generator] = None,
        registry: Optional[MigrationRegistry] = None,
    ) -> "Vault":
        """Open (creating if needed) the vault described by *config*.

        Args:
            config: Vault configuration; defaults apply when omitted
            table: Sensitivity table; the built-in table when omitted
            audit_key: Key for signing audit events; auditing is off when omitted
            rng: Noise generator for the budget manager
            registry: Migration steps; the shipped steps when omitted

        Raises:
            MigrationError: If the schema cannot be brought up to date
        """
        config = config or VaultConfig()
        table = table or DEFAULT_SENSITIVITY_TABLE

        await asyncio.to_thread(initialize_schema, config.db_path)
        repository = RecordRepository(config.db_path)

        raw_metadata = await asyncio.to_thread(repository.get_meta, VAULT_METADATA_KEY)
        metadata = VaultMetadata.from_dict(json.loads(raw_metadata)) if raw_metadata else None

        keys = KeyManager(metadata, iterations=config.kdf_iterations)
        records = EncryptedRecordStore(repository, keys)
        audit = SqliteAuditSink(audit_key, config.db_path) if audit_key else None
        budget = PrivacyBudgetManager(
            table,
            SqliteLedgerStore(config.db_path),
            policy=config.budget,
            rng=rng,
            audit=audit,
        )
        collector = MetricsCollector(table, config.collector, store=records)
        engine = MigrationEngine(registry or DEFAULT_REGISTRY)
        vault = cls(config, repository, keys, records, budget, collector, engine)
        await vault._finish_startup()
        return vault

    @property
    def is_initialized(self) -> bool:
        return self.keys.metadata is not None

    @property
    def state(self) -> KeyState:
        return self.keys.state

    @property
    def migration_pending(self) -> bool:
        """True while migrations wait for the vault key and the store is gated."""
        return not self.records.is_open

    async def _finish_startup(self) -> None:
        pending = await self.engine.pending(self.repository)
        if any(step.requires_key for step in pending) and not self.keys.is_unlocked:
            self.schema_version = await asyncio.to_thread(self.repository.get_schema_version)
            logger.info(
                "Migration to schema version %d needs the vault key; deferred until unlock",
                self.engine.target_version,
            )
            return
        self.schema_version = await self.engine.run(self.repository, self.keys)
        self.records.open_gate()
        logger.info("Vault opened at schema version %d", self.schema_version)

    async def setup(self, passphrase: str) -> VaultMetadata:
        """Set the first passphrase and persist the derivation parameters."""
        metadata = await self.keys.setup(passphrase)
        await asyncio.to_thread(
            self.repository.set_meta, VAULT_METADATA_KEY, json.dumps(metadata.to_dict())
        )
        if self.migration_pending:
            await self._finish_deferred()
        return metadata

    async def unlock(self, passphrase: str) -> KeyState:
        """Unlock the vault, finishing any migration deferred at open.

        Raises:
            InvalidPassphraseError: If the passphrase does not match
            MigrationError: If a deferred migration fails; the vault is locked again
        """
        state = await self.keys.unlock(passphrase)
        if self.migration_pending:
            await self._finish_deferred()
        return state

    async def _finish_deferred(self) -> None:
        try:
            await self._finish_startup()
        except MigrationError:
            await self.keys.lock()
            raise

    async def lock(self) -> None:
        await self.keys.lock()

    async def put(self, store_id: str, key: str, plaintext: bytes) -> EncryptedRecord:
        return await self.records.put(store_id, key, plaintext)

    async def get(self, store_id: str, key: str) -> Optional[bytes]:
        return await self.records.get(store_id, key)

    async def delete(self, store_id: str, key: str) -> bool:
        return await self.records.delete(store_id, key)

    async def upgrade_legacy(
        self,
        store_id: Optional[str] = None,
        dry_run: bool = False,
        backup_path: Optional[str] = None,
    ) -> UpgradeReport:
        return await self.records.upgrade_legacy(store_id, dry_run, backup_path)

    async def change_passphrase(self, old_passphrase: str, new_passphrase: str) -> int:
        """Change the passphrase and re-encrypt every record under the new key.

        The re-encrypted records and the new key metadata are committed in
        one transaction; on any failure the old passphrase and records remain.

        Returns:
            Number of records re-encrypted

        Raises:
            InvalidPassphraseError: If *old_passphrase* does not match
            IntegrityError: If a stored record cannot be opened; nothing is changed
            VaultLockedError: If migrations are still waiting for an unlock
        """
        if self.migration_pending:
            raise VaultLockedError("Unlock the vault to finish pending migrations first")
        rewritten = 0

        async def reseal(old_key: Key, new_key: Key, metadata: VaultMetadata) -> None:
            nonlocal rewritten
            resealed = await self.records.reseal_all(old_key, new_key)
            rewritten = await asyncio.to_thread(
                self.repository.commit_rekey, resealed, json.dumps(metadata.to_dict())
            )

        await run_to_completion(self.keys.change_passphrase(old_passphrase, new_passphrase, reseal))
        logger.info("Re-encrypted %d records under the new passphrase", rewritten)
        return rewritten

    async def collect(
        self, user_id: str, raw_input: Mapping[str, Any], consent: ConsentProvider
    ) -> CollectionResult:
        return await self.collector.collect(user_id, raw_input, consent)

    async def release(
        self,
        user_id: str,
        values: Mapping[str, float],
        weights: Optional[Mapping[str, float]] = None,
    ) -> Dict[str, NoisyValue]:
        """Release noisy aggregates; one metric costs one release, a batch likewise."""
        if len(values) == 1 and weights is None:
            (metric_name, true_value), = values.items()
            noisy = await self.budget.request_release(user_id, metric_name, true_value)
            return {metric_name: noisy}
        return await self.budget.request_batch_release(user_id, values, weights)

    async def wipe(self) -> None:
        """Lock the vault and delete every record, ledger and audit row.

        The instance is closed afterwards; open a new one to start over.
        """
        await self.keys.lock()
        await asyncio.to_thread(self.repository.wipe)
        logger.info("Vault wiped")
