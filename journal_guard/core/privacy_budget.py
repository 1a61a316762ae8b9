"""
Privacy budget management and the Laplace mechanism.

Every aggregate handed to a reporting collaborator goes through
PrivacyBudgetManager. Each user has one ledger per fixed time window; a
release is admitted only if its epsilon fits in what is left of the window's
limit.

Release order:
1. Admission check against the active window - rejects before any side effect
2. Noise drawn for every value in the release
3. Ledger increment committed
4. Noisy values returned

Steps 2-4 run as one unit per user: callers never see consumed budget without
a value, or a value without consumed budget.
"""

import asyncio
import logging
import math
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np

from journal_guard.storage.db import DEFAULT_DB_PATH
from journal_guard.storage.repository import LedgerRepository
from .audit import AuditSink
from .errors import BudgetExhaustedError, LedgerConflictError
from .sensitivity import SensitivityTable
from .tasks import run_to_completion

logger = logging.getLogger(__name__)

MIN_EPSILON = 1e-6
# Absorbs float rounding when many small releases add up to the limit.
EPSILON_TOLERANCE = 1e-9

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class PrivacyBudgetLedger:
    """Epsilon consumed by one user within one window."""
    user_id: str
    window_start: datetime
    window_end: datetime
    epsilon_consumed: float
    epsilon_limit: float

    def __post_init__(self):
        """Validate the ledger invariants."""
        if self.window_start >= self.window_end:
            raise ValueError("window_start must be before window_end")
        if self.epsilon_limit <= 0:
            raise ValueError("epsilon_limit must be > 0")
        if self.epsilon_consumed < 0:
            raise ValueError("epsilon_consumed cannot be negative")
        if self.epsilon_consumed > self.epsilon_limit:
            raise ValueError("epsilon_consumed cannot exceed epsilon_limit")

    @property
    def remaining(self) -> float:
        return max(0.0, self.epsilon_limit - self.epsilon_consumed)


@dataclass(frozen=True)
class BudgetPolicy:
    """Per-window limit and default cost of a release."""
    epsilon_limit: float = 1.0
    per_release_epsilon: float = 0.1
    window: timedelta = timedelta(hours=24)
    clamp_to_bounds: bool = True

    def __post_init__(self):
        """Validate policy values."""
        if self.epsilon_limit <= 0:
            raise ValueError("epsilon_limit must be > 0")
        if self.per_release_epsilon < MIN_EPSILON:
            raise ValueError(f"per_release_epsilon must be >= {MIN_EPSILON}")
        if self.per_release_epsilon > self.epsilon_limit:
            raise ValueError("per_release_epsilon cannot exceed epsilon_limit")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")


@dataclass(frozen=True)
class NoisyValue:
    """A perturbed aggregate ready for release."""
    metric_name: str
    value: float
    epsilon: float
    sensitivity: float
    noise_scale: float


def window_bounds(now: datetime, window: timedelta) -> Tuple[datetime, datetime]:
    """Return the fixed, epoch-aligned window containing *now*."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    index = (now - _EPOCH) // window
    start = _EPOCH + index * window
    return start, start + window


def laplace_noise(
    sensitivity: float,
    epsilon: float,
    rng: np.random.Generator,
    size: Optional[int] = None,
):
    """Draw Laplace noise with scale sensitivity / epsilon.

    The standard deviation of the draws is sqrt(2) * sensitivity / epsilon.
    """
    if sensitivity <= 0:
        raise ValueError("sensitivity must be > 0")
    if epsilon <= 0:
        raise ValueError("epsilon must be > 0")
    return rng.laplace(0.0, sensitivity / epsilon, size)


class BudgetLedgerStore(Protocol):
    """Capability for reading and committing budget ledgers.

    A durable ledger database can implement this instead of the stores below.
    """

    async def load(self, user_id: str, window_start: datetime) -> Optional[PrivacyBudgetLedger]:
        ...

    async def commit(self, ledger: PrivacyBudgetLedger, expected_consumed: float) -> None:
        ...

    async def purge_expired(self, before: datetime) -> int:
        ...


class InMemoryLedgerStore:
    """Ledger store kept in process memory."""

    def __init__(self):
        self._rows: Dict[Tuple[str, datetime], PrivacyBudgetLedger] = {}

    async def load(self, user_id: str, window_start: datetime) -> Optional[PrivacyBudgetLedger]:
        return self._rows.get((user_id, window_start))

    async def commit(self, ledger: PrivacyBudgetLedger, expected_consumed: float) -> None:
        slot = (ledger.user_id, ledger.window_start)
        current = self._rows.get(slot)
        if (current.epsilon_consumed if current else 0.0) != expected_consumed:
            raise LedgerConflictError("ledger changed since it was read")
        self._rows[slot] = ledger

    async def purge_expired(self, before: datetime) -> int:
        expired = [slot for slot, row in self._rows.items() if row.window_end <= before]
        for slot in expired:
            del self._rows[slot]
        return len(expired)


class SqliteLedgerStore:
    """Ledger store backed by the privacy_budget_ledger table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self._repository = LedgerRepository(db_path)

    async def load(self, user_id: str, window_start: datetime) -> Optional[PrivacyBudgetLedger]:
        row = await asyncio.to_thread(self._repository.fetch, user_id, window_start)
        if row is None:
            return None
        return PrivacyBudgetLedger(
            user_id=user_id,
            window_start=datetime.fromisoformat(row[0]),
            window_end=datetime.fromisoformat(row[1]),
            epsilon_consumed=row[2],
            epsilon_limit=row[3],
        )

    async def commit(self, ledger: PrivacyBudgetLedger, expected_consumed: float) -> None:
        written = await asyncio.to_thread(
            self._repository.compare_and_set,
            ledger.user_id,
            ledger.window_start,
            ledger.window_end,
            expected_consumed,
            ledger.epsilon_consumed,
            ledger.epsilon_limit,
        )
        if not written:
            raise LedgerConflictError("ledger changed since it was read")

    async def purge_expired(self, before: datetime) -> int:
        return await asyncio.to_thread(self._repository.purge_before, before)


_Release = Tuple[str, float, float]


class PrivacyBudgetManager:
    """Admits, perturbs and accounts for aggregate releases."""

    def __init__(
        self,
        table: SensitivityTable,
        ledger_store: BudgetLedgerStore,
        policy: Optional[BudgetPolicy] = None,
        rng: Optional[np.random.Generator] = None,
        clock: Optional[Callable[[], datetime]] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.table = table
        self.policy = policy or BudgetPolicy()
        self._ledger_store = ledger_store
        self._rng = rng if rng is not None else np.random.default_rng(secrets.randbits(128))
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = audit
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def request_release(
        self,
        user_id: str,
        metric_name: str,
        true_value: float,
        epsilon: Optional[float] = None,
    ) -> NoisyValue:
        """Release one noisy aggregate.

        Args:
            user_id: Owner of the budget being spent
            metric_name: Metric looked up in the sensitivity table
            true_value: Exact aggregate
            epsilon: Cost of this release; defaults to the policy's per-release epsilon

        Returns:
            The noisy value

        Raises:
            BudgetExhaustedError: If the window cannot afford the release
            ValueError: If the value or epsilon is invalid
        """
        cost = self._validate_epsilon(self.policy.per_release_epsilon if epsilon is None else epsilon)
        releases = await self._admit(user_id, [(metric_name, true_value, cost)], cost)
        return releases[0]

    async def request_batch_release(
        self,
        user_id: str,
        values: Mapping[str, float],
        weights: Optional[Mapping[str, float]] = None,
        epsilon: Optional[float] = None,
    ) -> Dict[str, NoisyValue]:
        """Release several related metrics for the cost of one release.

        The per-release epsilon is split evenly across the batch (Bonferroni),
        or in proportion to *weights* when given, and the whole batch passes or
        fails one admission check.

        Raises:
            BudgetExhaustedError: If the window cannot afford the batch
            ValueError: If the batch is empty or the weights do not match it
        """
        if not values:
            raise ValueError("values cannot be empty")
        total = self._validate_epsilon(self.policy.per_release_epsilon if epsilon is None else epsilon)

        names = list(values)
        if weights is None:
            shares = [1.0 / len(names)] * len(names)
        else:
            if set(weights) != set(names):
                raise ValueError("weights must have exactly one entry per metric")
            if any(not math.isfinite(w) or w <= 0 for w in weights.values()):
                raise ValueError("weights must be positive")
            weight_sum = math.fsum(weights[name] for name in names)
            shares = [weights[name] / weight_sum for name in names]

        items = [
            (name, values[name], self._validate_epsilon(total * share))
            for name, share in zip(names, shares)
        ]
        releases = await self._admit(user_id, items, total)
        return {release.metric_name: release for release in releases}

    async def ledger(self, user_id: str) -> PrivacyBudgetLedger:
        """Ledger for the active window, zeroed if nothing was released yet."""
        start, end = window_bounds(self._clock(), self.policy.window)
        existing = await self._ledger_store.load(user_id, start)
        return existing or PrivacyBudgetLedger(user_id, start, end, 0.0, self.policy.epsilon_limit)

    async def remaining(self, user_id: str) -> float:
        return (await self.ledger(user_id)).remaining

    async def purge_expired(self) -> int:
        """Drop ledgers for windows that have already rolled over."""
        start, _ = window_bounds(self._clock(), self.policy.window)
        return await self._ledger_store.purge_expired(start)

    def _validate_epsilon(self, epsilon: float) -> float:
        if not math.isfinite(epsilon) or epsilon < MIN_EPSILON:
            raise ValueError(f"epsilon must be a finite number >= {MIN_EPSILON}")
        return float(epsilon)

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if self._lock_users[user_id] == 0:
                del self._lock_users[user_id]
                del self._user_locks[user_id]

    async def _admit(self, user_id: str, items: Sequence[_Release], total: float) -> List[NoisyValue]:
        for name, value, _ in items:
            if not math.isfinite(value):
                raise ValueError(f"true value for {name} must be finite")
        return await run_to_completion(self._admit_locked(user_id, items, total))

    async def _admit_locked(self, user_id: str, items: Sequence[_Release], total: float) -> List[NoisyValue]:
        async with self._user_lock(user_id):
            ledger = await self.ledger(user_id)

            if ledger.epsilon_consumed + total > ledger.epsilon_limit + EPSILON_TOLERANCE:
                logger.warning(
                    "Release rejected: epsilon %.4f requested, %.4f remaining until %s",
                    total, ledger.remaining, ledger.window_end.isoformat(),
                )
                await self._record("dp_budget_rejected", user_id, total, ledger)
                raise BudgetExhaustedError(
                    f"Privacy budget exhausted until {ledger.window_end.isoformat()}",
                    user_id=user_id,
                    requested_epsilon=total,
                    remaining_epsilon=ledger.remaining,
                    window_end=ledger.window_end,
                )

            releases = [self._perturb(name, value, epsilon) for name, value, epsilon in items]
            updated = replace(
                ledger,
                epsilon_consumed=min(ledger.epsilon_limit, ledger.epsilon_consumed + total),
            )
            await self._ledger_store.commit(updated, expected_consumed=ledger.epsilon_consumed)
            await self._record("dp_budget_consumption", user_id, total, updated)
            return releases

    def _perturb(self, metric_name: str, true_value: float, epsilon: float) -> NoisyValue:
        sensitivity = self.table.sensitivity_for(metric_name)
        noisy = float(true_value) + float(laplace_noise(sensitivity, epsilon, self._rng))
        entry = self.table.get(metric_name)
        if self.policy.clamp_to_bounds and entry is not None:
            noisy = entry.clamp(noisy)
        return NoisyValue(
            metric_name=metric_name,
            value=noisy,
            epsilon=epsilon,
            sensitivity=sensitivity,
            noise_scale=sensitivity / epsilon,
        )

    async def _record(self, event_type: str, user_id: str, epsilon: float, ledger: PrivacyBudgetLedger) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.append(
                event_type,
                user_id,
                {
                    "requested_epsilon": epsilon,
                    "epsilon_consumed": ledger.epsilon_consumed,
                    "epsilon_limit": ledger.epsilon_limit,
                    "window_end": ledger.window_end.isoformat(),
                },
            )
        except Exception:
            # The release outcome is already decided; audit failure must not change it.
            logger.exception("Failed to append %s audit event", event_type)
