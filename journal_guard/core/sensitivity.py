"""
Metric sensitivity and free-text redaction policy.

Sensitivity values bound the noise the privacy budget manager adds, so the
table is treated as reviewed configuration: it is frozen once built, and a
replacement has to come through a signed configuration file.
"""

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Pattern, Tuple

DEFAULT_SENSITIVITY = 1.0
REDACTION_TOKEN = "[REDACTED]"


@dataclass(frozen=True)
class SensitivityEntry:
    """Sensitivity of one metric, with optional bounds for clamping."""
    metric_name: str
    sensitivity: float
    rationale: str
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def __post_init__(self):
        """Validate sensitivity and bounds."""
        if not self.metric_name:
            raise ValueError("metric_name cannot be empty")
        if not self.sensitivity > 0:
            raise ValueError(f"sensitivity for {self.metric_name} must be > 0")
        if (self.min_value is not None and self.max_value is not None
                and self.min_value > self.max_value):
            raise ValueError(f"min_value must be <= max_value for {self.metric_name}")

    def clamp(self, value: float) -> float:
        if self.min_value is not None:
            value = max(self.min_value, value)
        if self.max_value is not None:
            value = min(self.max_value, value)
        return value


# Conservative PII pattern set, applied in order.
DEFAULT_REDACTION_PATTERNS: Tuple[str, ...] = (
    r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}",  # email
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}\b",  # uuid
    r"\b\d{3}-\d{3}-\d{4}\b",  # phone (US-like)
    r"\+?\b\d{7,15}\b",  # international-ish phone numbers
    r"\b\d{3}[\s-]?\d{2}[\s-]?\d{4}\b",  # national id formats (loose)
    r"\b(?:street|st\.|ave|road|rd\.|drive|dr\.|lane|ln\.|boulevard|blvd)\b",  # address hints
)


@dataclass(frozen=True)
class RedactionPolicy:
    """How free-text and categorical input fields are handled."""
    free_text_fields: FrozenSet[str] = frozenset({"notes"})
    categorical_fields: Mapping[str, FrozenSet[str]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    patterns: Tuple[str, ...] = DEFAULT_REDACTION_PATTERNS

    def __post_init__(self):
        compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        object.__setattr__(self, "_compiled", compiled)

    @property
    def compiled_patterns(self) -> Tuple[Pattern[str], ...]:
        return self._compiled  # type: ignore[attr-defined]

    def redact(self, text: str) -> Tuple[str, int]:
        """Replace identifying substrings with a fixed token.

        Returns:
            (redacted text, number of substitutions)
        """
        total = 0
        for pattern in self.compiled_patterns:
            text, count = pattern.subn(REDACTION_TOKEN, text)
            total += count
        return text, total


class SensitivityTable:
    """Read-only mapping from metric name to SensitivityEntry."""

    def __init__(
        self,
        entries: Iterable[SensitivityEntry],
        redaction: Optional[RedactionPolicy] = None,
    ):
        table: Dict[str, SensitivityEntry] = {}
        for entry in entries:
            if entry.metric_name in table:
                raise ValueError(f"Duplicate sensitivity entry: {entry.metric_name}")
            table[entry.metric_name] = entry
        self._entries = MappingProxyType(table)
        self._redaction = redaction or RedactionPolicy()

    @property
    def entries(self) -> Mapping[str, SensitivityEntry]:
        return self._entries

    @property
    def redaction(self) -> RedactionPolicy:
        return self._redaction

    def get(self, metric_name: str) -> Optional[SensitivityEntry]:
        return self._entries.get(metric_name)

    def sensitivity_for(self, metric_name: str) -> float:
        """Sensitivity of *metric_name*, defaulting to 1 for unlisted metrics."""
        entry = self._entries.get(metric_name)
        return entry.sensitivity if entry else DEFAULT_SENSITIVITY

    def __contains__(self, metric_name: object) -> bool:
        return metric_name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# Built-in table for the journaling app. Scores are on a 0-10 or 0-100 scale,
# so one entry can move a per-user aggregate by at most the scale width.
DEFAULT_SENSITIVITY_TABLE = SensitivityTable(
    [
        SensitivityEntry("pain_level", 10.0, "0-10 self-reported scale", 0.0, 10.0),
        SensitivityEntry("mood", 10.0, "0-10 self-reported scale", 0.0, 10.0),
        SensitivityEntry("sleep_hours", 24.0, "hours per day", 0.0, 24.0),
        SensitivityEntry("fatigue", 10.0, "0-10 self-reported scale", 0.0, 10.0),
        SensitivityEntry("entry_count", 1.0, "one entry changes a count by one", 0.0, None),
        SensitivityEntry("self_compassion", 100.0, "0-100 derived score", 0.0, 100.0),
        SensitivityEntry("hopefulness", 100.0, "0-100 derived score", 0.0, 100.0),
    ],
    RedactionPolicy(
        free_text_fields=frozenset({"notes", "mood_notes"}),
        categorical_fields=MappingProxyType({
            "time_of_day": frozenset({"morning", "afternoon", "evening", "night"}),
            "activity_level": frozenset({"low", "moderate", "high"}),
        }),
    ),
)
