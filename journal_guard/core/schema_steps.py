"""
Schema steps shipped with the vault.

Version 1 is the layout written by the previous storage format, version 3 is
the current one. Both steps only rearrange envelopes; ciphertext is never
opened.
"""

from journal_guard.storage.models import CURRENT_RECORD_VERSION, FormatTag
from journal_guard.storage.repository import Stores
from .migrations import MigrationContext, MigrationRegistry

LEGACY_ENTRY_STORE = "pain-entry"
ENTRY_STORE = "entries"

DEFAULT_REGISTRY = MigrationRegistry()


@DEFAULT_REGISTRY.register(1, 2, "move pain-entry records into the entries store")
def move_legacy_entry_store(stores: Stores, context: MigrationContext) -> Stores:
    legacy = stores.get(LEGACY_ENTRY_STORE)
    if not legacy:
        stores.pop(LEGACY_ENTRY_STORE, None)
        return stores

    target = stores.setdefault(ENTRY_STORE, {})
    for key in list(legacy):
        # A key already present in the target was written after the move; keep both.
        if key not in target:
            target[key] = legacy.pop(key)
    if not legacy:
        del stores[LEGACY_ENTRY_STORE]
    return stores


@DEFAULT_REGISTRY.register(2, 3, "stamp recordVersion on current-format envelopes")
def stamp_record_version(stores: Stores, context: MigrationContext) -> Stores:
    current = FormatTag.CURRENT_AEAD.value
    known = {tag.value for tag in FormatTag}
    for records in stores.values():
        for wire in records.values():
            tag = wire.get("formatTag")
            if isinstance(tag, str) and tag not in known and tag.lower() in known:
                tag = tag.lower()
                wire["formatTag"] = tag
            if tag == current and "recordVersion" not in wire:
                wire["recordVersion"] = CURRENT_RECORD_VERSION
    return stores


SCHEMA_TARGET_VERSION = DEFAULT_REGISTRY.latest_version
