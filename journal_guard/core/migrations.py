"""
Schema migration engine.

Migration steps are pure functions over the stored record envelopes, registered
for one (from_version, to_version) increment each. Steps work on the shape of
the envelopes and only see plaintext when they are registered with
``requires_key=True``.

Rules every step follows:
1. Idempotent: running a step on already-migrated state changes nothing
2. Unknown envelope fields are carried over unchanged
3. Unexpected shapes raise MigrationError instead of being guessed at
"""

import asyncio
import copy
import logging
import sqlite3
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from journal_guard.storage.repository import RecordRepository, Stores
from .crypto import RecordCipher
from .errors import MigrationError, VaultLockedError
from .keys import KeyProvider
from .tasks import run_to_completion

logger = logging.getLogger(__name__)

BASELINE_VERSION = 1

KNOWN_ENVELOPE_FIELDS = frozenset({"formatTag", "nonce", "ciphertext", "recordVersion", "iv", "data"})


@dataclass(frozen=True)
class PersistedState:
    """Every record envelope plus the schema version they conform to."""
    schema_version: int
    stores: Stores = field(default_factory=dict)


@dataclass(frozen=True)
class MigrationContext:
    """What a step gets besides the stores themselves."""
    from_version: int
    to_version: int
    cipher: Optional[RecordCipher] = None


Transform = Callable[[Stores, MigrationContext], Stores]


@dataclass(frozen=True)
class MigrationStep:
    """One registered schema increment."""
    from_version: int
    to_version: int
    description: str
    transform: Transform
    requires_key: bool = False

    def __post_init__(self):
        """Validate the step covers exactly one increment."""
        if self.from_version < BASELINE_VERSION:
            raise ValueError(f"from_version must be >= {BASELINE_VERSION}")
        if self.to_version != self.from_version + 1:
            raise ValueError("to_version must be from_version + 1")

    def apply(self, stores: Stores, cipher: Optional[RecordCipher] = None) -> Stores:
        """Run the transform on a deep copy, leaving *stores* untouched."""
        context = MigrationContext(self.from_version, self.to_version, cipher)
        return self.transform(copy.deepcopy(stores), context)


class MigrationRegistry:
    """Ordered collection of migration steps keyed by their starting version."""

    def __init__(self):
        self._steps: Dict[int, MigrationStep] = {}

    def add(self, step: MigrationStep) -> MigrationStep:
        if step.from_version in self._steps:
            raise ValueError(
                f"A migration from version {step.from_version} is already registered"
            )
        self._steps[step.from_version] = step
        return step

    def register(
        self,
        from_version: int,
        to_version: int,
        description: str,
        requires_key: bool = False,
    ) -> Callable[[Transform], Transform]:
        """Decorator form of :meth:`add`."""
        def decorator(transform: Transform) -> Transform:
            self.add(MigrationStep(from_version, to_version, description, transform, requires_key))
            return transform
        return decorator

    @property
    def latest_version(self) -> int:
        return max((s.to_version for s in self._steps.values()), default=BASELINE_VERSION)

    def plan(self, current: int, target: int) -> List[MigrationStep]:
        """Return the steps that take *current* to *target*, in order.

        Raises:
            MigrationError: If an increment has no registered step
        """
        steps = []
        for version in range(current, target):
            step = self._steps.get(version)
            if step is None:
                raise MigrationError(
                    f"No migration registered from version {version} to {version + 1}",
                    from_version=version,
                    to_version=version + 1,
                    last_completed=current,
                )
            steps.append(step)
        return steps


def _unknown_field_census(stores: Stores) -> Counter:
    census: Counter = Counter()
    for records in stores.values():
        for wire in records.values():
            if isinstance(wire, dict):
                census.update(k for k in wire if k not in KNOWN_ENVELOPE_FIELDS)
    return census


def _check_shape(stores: object) -> None:
    if not isinstance(stores, dict):
        raise TypeError("migration step must return a dict of stores")
    for store_id, records in stores.items():
        if not isinstance(records, dict):
            raise TypeError(f"store {store_id!r} is not a dict of records")
        for key, wire in records.items():
            if not isinstance(wire, dict):
                raise TypeError(f"record {store_id}/{key} is not an object")


class MigrationEngine:
    """Composes registered steps from the stored version up to the target."""

    def __init__(self, registry: MigrationRegistry, target_version: Optional[int] = None):
        self.registry = registry
        self.target_version = target_version if target_version is not None else registry.latest_version

    def migrate(self, state: PersistedState, cipher: Optional[RecordCipher] = None) -> PersistedState:
        """Apply every pending step to *state* without touching storage.

        Returns:
            New state at the target version, or *state* itself if nothing is pending

        Raises:
            MigrationError: If any step fails
        """
        self._check_supported(state.schema_version)
        if state.schema_version == self.target_version:
            return state
        stores = state.stores
        version = state.schema_version
        for step in self.registry.plan(state.schema_version, self.target_version):
            stores = self._apply(step, stores, cipher, last_completed=version)
            version = step.to_version
        return PersistedState(schema_version=version, stores=stores)

    async def run(self, repository: RecordRepository, key_provider: Optional[KeyProvider] = None) -> int:
        """Startup sequence: bring the database up to the target version.

        Each increment is committed on its own, so a failure leaves the schema
        version at the last increment that fully succeeded. Runs to completion
        even if the caller stops waiting.

        Returns:
            The schema version on disk afterwards
        """
        return await run_to_completion(self._run(repository, key_provider))

    async def pending(self, repository: RecordRepository) -> List[MigrationStep]:
        """Steps :meth:`run` would apply to *repository*, without applying them.

        Raises:
            MigrationError: If the stored schema is newer than the target or a step is missing
        """
        version = await self._stored_version(repository)
        if version is None or version == self.target_version:
            return []
        return self.registry.plan(version, self.target_version)

    async def _stored_version(self, repository: RecordRepository) -> Optional[int]:
        """Version on disk, or None for a fresh database holding no records."""
        version = await asyncio.to_thread(repository.get_schema_version)
        if version is None:
            counts = await asyncio.to_thread(repository.store_counts)
            if not counts:
                return None
            version = BASELINE_VERSION
            logger.debug("No schema marker on existing data; assuming version %d", version)
        self._check_supported(version)
        return version

    def _check_supported(self, version: int) -> None:
        if version > self.target_version:
            raise MigrationError(
                f"Schema version {version} is newer than the latest supported version "
                f"{self.target_version}",
                from_version=version,
                to_version=self.target_version,
                last_completed=version,
            )

    async def _run(self, repository: RecordRepository, key_provider: Optional[KeyProvider]) -> int:
        version = await self._stored_version(repository)
        if version is None:
            await asyncio.to_thread(repository.commit_migration, {}, {}, self.target_version)
            logger.info("Initialized empty vault at schema version %d", self.target_version)
            return self.target_version
        if version == self.target_version:
            return version

        steps = self.registry.plan(version, self.target_version)
        stores = await asyncio.to_thread(repository.load_stores)

        if any(step.requires_key for step in steps):
            if key_provider is None:
                raise MigrationError(
                    "Pending migrations need the vault key but no key provider was given",
                    last_completed=version,
                )
            try:
                async with key_provider.key_session() as key:
                    return await self._commit_steps(repository, steps, stores, version, RecordCipher(key))
            except VaultLockedError as e:
                raise MigrationError(
                    "Pending migrations need the vault key but the vault is locked",
                    from_version=version,
                    to_version=self.target_version,
                    last_completed=version,
                ) from e
        return await self._commit_steps(repository, steps, stores, version, None)

    async def _commit_steps(
        self,
        repository: RecordRepository,
        steps: List[MigrationStep],
        stores: Stores,
        version: int,
        cipher: Optional[RecordCipher],
    ) -> int:
        for step in steps:
            migrated = self._apply(step, stores, cipher, last_completed=version)
            try:
                written, removed = await asyncio.to_thread(
                    repository.commit_migration, stores, migrated, step.to_version
                )
            except sqlite3.Error as e:
                raise MigrationError(
                    f"Could not commit migration {step.from_version}->{step.to_version}: {e}",
                    from_version=step.from_version,
                    to_version=step.to_version,
                    last_completed=version,
                ) from e
            logger.info(
                "Migrated schema %d->%d (%s): %d rows written, %d removed",
                step.from_version, step.to_version, step.description, written, removed,
            )
            stores = migrated
            version = step.to_version
        return version

    def _apply(
        self,
        step: MigrationStep,
        stores: Stores,
        cipher: Optional[RecordCipher],
        last_completed: int,
    ) -> Stores:
        def failure(message: str) -> MigrationError:
            return MigrationError(
                f"Migration {step.from_version}->{step.to_version} ({step.description}) failed: {message}",
                from_version=step.from_version,
                to_version=step.to_version,
                last_completed=last_completed,
            )

        if step.requires_key and cipher is None:
            raise failure("step needs the vault key")
        try:
            migrated = step.apply(stores, cipher)
            _check_shape(migrated)
        except MigrationError as e:
            raise failure(str(e)) from e
        except Exception as e:
            raise failure(f"{type(e).__name__}: {e}") from e

        before = _unknown_field_census(stores)
        after = _unknown_field_census(migrated)
        lost = sorted(name for name, count in before.items() if after[name] < count)
        if lost:
            raise failure(f"step dropped unknown fields {lost}")
        return migrated
