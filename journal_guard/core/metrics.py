"""
Metrics collection and sanitization.

Turns raw journal input into numeric and categorical aggregates. Free text is
only ever read after consent is confirmed, is redacted before anything is
derived from it, and is never persisted: only counts and a length band
survive.
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Union

from .record_store import EncryptedRecordStore
from .sensitivity import REDACTION_TOKEN, SensitivityTable

logger = logging.getLogger(__name__)

ANALYTICS_SCOPE = "analytics"
FREE_TEXT_SCOPE = "free_text"
DEFAULT_MAX_TEXT_LENGTH = 2000
METRICS_STORE = "metrics"

_WORD = re.compile(r"\S+")


class ConsentProvider(Protocol):
    """Consent query owned by the app's security layer."""

    def is_consent_granted(self, user_id: str, scope: str) -> bool:
        ...


class OversizePolicy(Enum):
    """What to do with free text longer than the cap."""
    TRUNCATE = "truncate"
    REJECT = "reject"


@dataclass(frozen=True)
class CollectorConfig:
    """Limits applied by the collector."""
    max_text_length: int = DEFAULT_MAX_TEXT_LENGTH
    oversize: OversizePolicy = OversizePolicy.TRUNCATE
    metrics_store: str = METRICS_STORE

    def __post_init__(self):
        """Validate the text cap."""
        if self.max_text_length <= 0:
            raise ValueError("max_text_length must be > 0")


@dataclass(frozen=True)
class ConsentDeniedRejection:
    """Collection skipped because a consent scope was not granted. Not an error."""
    user_id: str
    scope: str


@dataclass(frozen=True)
class InputRejected:
    """Collection skipped because the input exceeded collector limits."""
    user_id: str
    field_name: str
    reason: str


@dataclass(frozen=True)
class SanitizedMetric:
    """Aggregates derived from one raw input. Contains no free text."""
    user_id: str
    collected_at: datetime
    values: Dict[str, float] = field(default_factory=dict)
    categories: Dict[str, str] = field(default_factory=dict)
    redactions: int = 0
    dropped_fields: int = 0
    truncated: bool = False
    record_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "collected_at": self.collected_at.isoformat(),
            "values": dict(self.values),
            "categories": dict(self.categories),
            "redactions": self.redactions,
            "dropped_fields": self.dropped_fields,
            "truncated": self.truncated,
        }


CollectionResult = Union[SanitizedMetric, ConsentDeniedRejection, InputRejected]


def length_band(length: int) -> str:
    if length == 0:
        return "empty"
    if length <= 140:
        return "short"
    if length <= 1000:
        return "medium"
    return "long"


class MetricsCollector:
    """Sanitizes raw input into aggregates and optionally persists them."""

    def __init__(
        self,
        table: SensitivityTable,
        config: Optional[CollectorConfig] = None,
        store: Optional[EncryptedRecordStore] = None,
    ):
        self.table = table
        self.config = config or CollectorConfig()
        self._store = store

    async def collect(
        self,
        user_id: str,
        raw_input: Mapping[str, Any],
        consent: ConsentProvider,
    ) -> CollectionResult:
        """Sanitize *raw_input* for *user_id*.

        Absence of an explicit consent grant is treated as denial.

        Returns:
            SanitizedMetric on success, otherwise a rejection describing why
            nothing was collected
        """
        if not consent.is_consent_granted(user_id, ANALYTICS_SCOPE):
            return ConsentDeniedRejection(user_id, ANALYTICS_SCOPE)

        policy = self.table.redaction
        text_fields = [name for name in raw_input if name in policy.free_text_fields]
        if text_fields and not consent.is_consent_granted(user_id, FREE_TEXT_SCOPE):
            return ConsentDeniedRejection(user_id, FREE_TEXT_SCOPE)

        values: Dict[str, float] = {}
        categories: Dict[str, str] = {}
        redactions = 0
        dropped = 0
        truncated = False

        for name, raw in raw_input.items():
            if name in policy.free_text_fields:
                if not isinstance(raw, str):
                    dropped += 1
                    continue
                text = raw
                if len(text) > self.config.max_text_length:
                    if self.config.oversize is OversizePolicy.REJECT:
                        return InputRejected(
                            user_id, name, f"longer than {self.config.max_text_length} characters"
                        )
                    text = text[:self.config.max_text_length]
                    truncated = True
                redacted, count = policy.redact(text)
                redactions += count
                words = [w for w in _WORD.findall(redacted) if w != REDACTION_TOKEN]
                values[f"{name}.word_count"] = float(len(words))
                values[f"{name}.redactions"] = float(count)
                categories[f"{name}.length_band"] = length_band(len(text))
            elif name in policy.categorical_fields:
                allowed = policy.categorical_fields[name]
                label = raw.strip().lower() if isinstance(raw, str) else None
                if label in allowed:
                    categories[name] = label
                else:
                    dropped += 1
            elif isinstance(raw, (int, float)) and not isinstance(raw, bool) and math.isfinite(raw):
                entry = self.table.get(name)
                values[name] = entry.clamp(float(raw)) if entry else float(raw)
            else:
                dropped += 1

        metric = SanitizedMetric(
            user_id=user_id,
            collected_at=datetime.now(timezone.utc),
            values=values,
            categories=categories,
            redactions=redactions,
            dropped_fields=dropped,
            truncated=truncated,
        )
        logger.debug(
            "Collected %d values, %d categories, %d redactions, %d dropped",
            len(values), len(categories), redactions, dropped,
        )

        if self._store is not None:
            record_key = f"{user_id}:{uuid.uuid4().hex}"
            await self._store.put_json(self.config.metrics_store, record_key, metric.to_dict())
            metric = replace(metric, record_key=record_key)
        return metric
