"""
Encrypted record store.

Wraps the SQLite record table with authenticated encryption. Reads accept both
the current envelope and the legacy one; a legacy record is re-encrypted into
the current format the first time it is read successfully.

Ordering guarantees:
1. Operations wait on a startup gate until migrations have finished
2. Operations on the same (store_id, key) run one at a time, in arrival order
3. Once started, an operation runs to completion even if its caller stops waiting
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Set, Tuple, TypeVar

from journal_guard.storage.models import (
    EncryptedRecord,
    LegacyRecord,
    decode_record,
    encode_record,
    is_current_shape,
    is_legacy_shape,
)
from journal_guard.storage.repository import RecordRepository, Stores
from .crypto import RecordCipher
from .errors import IntegrityError, VaultLockedError
from .keys import Key, KeyProvider
from .tasks import run_to_completion

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class UpgradeReport:
    """Outcome of a bulk legacy upgrade."""
    scanned: int = 0
    upgraded: int = 0
    skipped: int = 0
    failed: List[Tuple[str, str, str]] = field(default_factory=list)
    dry_run: bool = False
    backup_path: Optional[str] = None


class EncryptedRecordStore:
    """Async record store over a RecordRepository.

    Every operation borrows the vault key through the KeyProvider and fails
    with VaultLockedError, before touching storage, while the vault is locked.
    """

    def __init__(self, repository: RecordRepository, key_provider: KeyProvider, ready: bool = False):
        self._repository = repository
        self._keys = key_provider
        self._gate = asyncio.Event()
        if ready:
            self._gate.set()
        self._slots: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._slot_users: Dict[Tuple[str, str], int] = {}
        self._inflight: Set["asyncio.Future[Any]"] = set()

    @property
    def is_open(self) -> bool:
        return self._gate.is_set()

    def open_gate(self) -> None:
        """Admit queued and future operations."""
        self._gate.set()

    def close_gate(self) -> None:
        """Hold new operations until open_gate is called."""
        self._gate.clear()

    async def put(self, store_id: str, key: str, plaintext: bytes) -> EncryptedRecord:
        """Encrypt and persist *plaintext*, replacing any previous record.

        Returns:
            The envelope that was written
        """
        return await self._run(self._put(store_id, key, plaintext))

    async def get(self, store_id: str, key: str) -> Optional[bytes]:
        """Read and decrypt a record.

        Returns:
            Plaintext, or None if the record does not exist

        Raises:
            IntegrityError: If the record fails authentication or has an unknown shape
            VaultLockedError: If the vault is locked
        """
        return await self._run(self._get(store_id, key))

    async def delete(self, store_id: str, key: str) -> bool:
        """Remove a record's ciphertext and nonce.

        Returns:
            True if a record was removed
        """
        return await self._run(self._delete(store_id, key))

    async def put_json(self, store_id: str, key: str, value: Any) -> EncryptedRecord:
        payload = json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return await self.put(store_id, key, payload)

    async def get_json(self, store_id: str, key: str) -> Any:
        payload = await self.get(store_id, key)
        return json.loads(payload.decode("utf-8")) if payload is not None else None

    async def keys(self, store_id: str) -> List[str]:
        await self._gate.wait()
        if not self._keys.is_unlocked:
            raise VaultLockedError("Vault is locked")
        return await asyncio.to_thread(self._repository.list_keys, store_id)

    async def upgrade_legacy(
        self,
        store_id: Optional[str] = None,
        dry_run: bool = False,
        backup_path: Optional[str] = None,
    ) -> UpgradeReport:
        """Re-encrypt every legacy record into the current format.

        Records that fail authentication are reported and left untouched.

        Args:
            store_id: Restrict the scan to one store
            dry_run: Count legacy records without rewriting them
            backup_path: Write the legacy envelopes to this JSON file before
                rewriting anything. Ignored on a dry run.
        """
        await self._gate.wait()
        if not self._keys.is_unlocked:
            raise VaultLockedError("Vault is locked")

        if store_id is None:
            counts = await asyncio.to_thread(self._repository.store_counts)
            store_ids = sorted(counts)
        else:
            store_ids = [store_id]

        report = UpgradeReport(dry_run=dry_run)
        if backup_path and not dry_run:
            exported = await asyncio.to_thread(self._export_legacy, store_ids, backup_path)
            report.backup_path = backup_path
            logger.info("Backed up %d legacy records to %s", exported, backup_path)

        for sid in store_ids:
            for key in await asyncio.to_thread(self._repository.list_keys, sid):
                report.scanned += 1
                try:
                    upgraded = await self._run(self._upgrade_one(sid, key, dry_run))
                except IntegrityError as e:
                    report.failed.append((sid, key, str(e)))
                    continue
                if upgraded:
                    report.upgraded += 1
                else:
                    report.skipped += 1

        logger.info(
            "Legacy upgrade finished: scanned=%d upgraded=%d skipped=%d failed=%d dry_run=%s",
            report.scanned, report.upgraded, report.skipped, len(report.failed), dry_run,
        )
        return report

    async def reseal_all(self, old_key: Key, new_key: Key) -> Stores:
        """Re-encrypt every stored record under *new_key*.

        Legacy records come out in the current format. Nothing is written; the
        caller persists the returned envelopes.

        Raises:
            IntegrityError: If any record does not open under *old_key*
        """
        await self._gate.wait()
        stores = await asyncio.to_thread(self._repository.load_stores)
        return await asyncio.to_thread(
            _reseal_stores, stores, RecordCipher(old_key), RecordCipher(new_key)
        )

    def _export_legacy(self, store_ids: List[str], backup_path: str) -> int:
        stores = self._repository.load_stores()
        envelopes: Stores = {}
        for sid in store_ids:
            for key, wire in stores.get(sid, {}).items():
                if is_legacy_shape(wire):
                    envelopes.setdefault(sid, {})[key] = wire
        with open(backup_path, "w", encoding="utf-8") as f:
            json.dump(envelopes, f, indent=2, sort_keys=True)
        return sum(len(records) for records in envelopes.values())

    async def _run(self, operation: Awaitable[T]) -> T:
        return await run_to_completion(operation, self._inflight)

    @asynccontextmanager
    async def _serialized(self, store_id: str, key: str) -> AsyncIterator[None]:
        slot = (store_id, key)
        lock = self._slots.setdefault(slot, asyncio.Lock())
        self._slot_users[slot] = self._slot_users.get(slot, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._slot_users[slot] -= 1
            if self._slot_users[slot] == 0:
                del self._slot_users[slot]
                del self._slots[slot]

    async def _put(self, store_id: str, key: str, plaintext: bytes) -> EncryptedRecord:
        await self._gate.wait()
        async with self._serialized(store_id, key):
            async with self._keys.key_session() as vault_key:
                record = RecordCipher(vault_key).seal(plaintext)
                await asyncio.to_thread(
                    self._repository.write_record, store_id, key, encode_record(record)
                )
        return record

    async def _get(self, store_id: str, key: str) -> Optional[bytes]:
        await self._gate.wait()
        async with self._serialized(store_id, key):
            async with self._keys.key_session() as vault_key:
                wire = await asyncio.to_thread(self._repository.read_record, store_id, key)
                if wire is None:
                    return None
                cipher = RecordCipher(vault_key)
                try:
                    record = decode_record(wire)
                    if isinstance(record, LegacyRecord):
                        return await self._open_and_upgrade(cipher, store_id, key, record)
                    return cipher.open(record)
                except IntegrityError as e:
                    logger.warning("Unreadable record in store %s: %s", store_id, e)
                    raise IntegrityError(f"{e} ({store_id}/{key})", store_id, key) from e

    async def _delete(self, store_id: str, key: str) -> bool:
        await self._gate.wait()
        async with self._serialized(store_id, key):
            if not self._keys.is_unlocked:
                raise VaultLockedError("Vault is locked")
            return await asyncio.to_thread(self._repository.delete_record, store_id, key)

    async def _upgrade_one(self, store_id: str, key: str, dry_run: bool) -> bool:
        async with self._serialized(store_id, key):
            async with self._keys.key_session() as vault_key:
                wire = await asyncio.to_thread(self._repository.read_record, store_id, key)
                if wire is None or is_current_shape(wire):
                    return False
                if not is_legacy_shape(wire):
                    raise IntegrityError("stored record has an unrecognized shape", store_id, key)
                record = decode_record(wire)
                cipher = RecordCipher(vault_key)
                if dry_run:
                    cipher.open_legacy(record)
                    return True
                await self._open_and_upgrade(cipher, store_id, key, record)
                return True

    async def _open_and_upgrade(
        self, cipher: RecordCipher, store_id: str, key: str, record: LegacyRecord
    ) -> bytes:
        plaintext = cipher.open_legacy(record)
        upgraded = cipher.seal(plaintext)
        await asyncio.to_thread(
            self._repository.write_record, store_id, key, encode_record(upgraded)
        )
        logger.info("Upgraded legacy record to current format in store %s", store_id)
        return plaintext


def _reseal_stores(stores: Stores, old: RecordCipher, new: RecordCipher) -> Stores:
    resealed: Stores = {}
    for store_id, records in stores.items():
        for key, wire in records.items():
            try:
                record = decode_record(wire)
                if isinstance(record, LegacyRecord):
                    plaintext = old.open_legacy(record)
                else:
                    plaintext = old.open(record)
            except IntegrityError as e:
                raise IntegrityError(f"{e} ({store_id}/{key})", store_id, key) from e
            resealed.setdefault(store_id, {})[key] = encode_record(new.seal(plaintext))
    return resealed
