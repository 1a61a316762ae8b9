"""
Configuration management and loading.

Loads the vault settings and the signed sensitivity table from YAML.
Validation is strict: unknown keys, missing sections and out-of-range values
are errors, never silently defaulted.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Optional

import yaml

from journal_guard.core.errors import ConfigSignatureError
from journal_guard.core.keys import DEFAULT_ITERATIONS
from journal_guard.core.metrics import CollectorConfig, OversizePolicy
from journal_guard.core.privacy_budget import BudgetPolicy
from journal_guard.core.sensitivity import (
    DEFAULT_REDACTION_PATTERNS,
    RedactionPolicy,
    SensitivityEntry,
    SensitivityTable,
)
from journal_guard.storage.db import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

SIGNATURE_KEY = "signature"


@dataclass(frozen=True)
class VaultConfig:
    """Complete vault configuration."""
    db_path: str = DEFAULT_DB_PATH
    kdf_iterations: int = DEFAULT_ITERATIONS
    budget: BudgetPolicy = field(default_factory=BudgetPolicy)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    sensitivity_path: Optional[str] = None

    def __post_init__(self):
        """Validate scalar settings."""
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.kdf_iterations <= 0:
            raise ValueError("kdf_iterations must be > 0")


def _read_yaml(path: str, what: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"{what} file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in {what} file {path}: {e}")

    if not raw:
        raise ValueError(f"{what} file is empty")
    if not isinstance(raw, dict):
        raise ValueError(f"{what} file must contain a mapping")
    return raw


def _section(raw: Dict[str, Any], name: str, allowed: set) -> Dict[str, Any]:
    data = raw.get(name, {})
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")
    return data


def _positive_number(data: Dict[str, Any], key: str, path: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be > 0")
    return float(value)


def load_vault_config(path: str) -> VaultConfig:
    """Load and validate vault configuration from a YAML file.

    Every section is optional; omitted values take the defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated VaultConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    raw = _read_yaml(path, "Vault config")

    allowed_top_keys = {'storage', 'kdf', 'privacy', 'collector', 'sensitivity'}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage = _section(raw, 'storage', {'path'})
    db_path = storage.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path:
        raise ValueError("'path' in storage must be a non-empty string")

    kdf = _section(raw, 'kdf', {'iterations'})
    iterations = kdf.get('iterations', DEFAULT_ITERATIONS)
    if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations <= 0:
        raise ValueError("'iterations' in kdf must be a positive integer")

    privacy = _section(
        raw, 'privacy', {'epsilon_limit', 'per_release_epsilon', 'window_hours', 'clamp_to_bounds'}
    )
    defaults = BudgetPolicy()
    clamp = privacy.get('clamp_to_bounds', defaults.clamp_to_bounds)
    if not isinstance(clamp, bool):
        raise ValueError("'clamp_to_bounds' in privacy must be true or false")
    budget = BudgetPolicy(
        epsilon_limit=_positive_number(privacy, 'epsilon_limit', 'privacy', defaults.epsilon_limit),
        per_release_epsilon=_positive_number(
            privacy, 'per_release_epsilon', 'privacy', defaults.per_release_epsilon
        ),
        window=timedelta(hours=_positive_number(
            privacy, 'window_hours', 'privacy', defaults.window.total_seconds() / 3600
        )),
        clamp_to_bounds=clamp,
    )

    collector_data = _section(raw, 'collector', {'max_text_length', 'oversize'})
    max_text_length = collector_data.get('max_text_length', CollectorConfig().max_text_length)
    if isinstance(max_text_length, bool) or not isinstance(max_text_length, int) or max_text_length <= 0:
        raise ValueError("'max_text_length' in collector must be a positive integer")
    oversize_str = collector_data.get('oversize', OversizePolicy.TRUNCATE.value)
    try:
        oversize = OversizePolicy(str(oversize_str).lower())
    except ValueError:
        valid = [policy.value for policy in OversizePolicy]
        raise ValueError(f"'oversize' in collector must be one of: {valid}")

    sensitivity = _section(raw, 'sensitivity', {'path'})
    sensitivity_path = sensitivity.get('path')
    if sensitivity_path is not None and not isinstance(sensitivity_path, str):
        raise ValueError("'path' in sensitivity must be a string")

    return VaultConfig(
        db_path=db_path,
        kdf_iterations=iterations,
        budget=budget,
        collector=CollectorConfig(max_text_length=max_text_length, oversize=oversize),
        sensitivity_path=sensitivity_path,
    )


def canonical_payload(raw: Dict[str, Any]) -> bytes:
    """Canonical bytes of a sensitivity config, excluding its signature."""
    unsigned = {k: v for k, v in raw.items() if k != SIGNATURE_KEY}
    return json.dumps(unsigned, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_sensitivity_config(raw: Dict[str, Any], signing_key: bytes) -> str:
    """Compute the HMAC-SHA256 signature for a sensitivity config mapping."""
    return hmac.new(signing_key, canonical_payload(raw), hashlib.sha256).hexdigest()


def sign_sensitivity_file(path: str, signing_key: bytes) -> str:
    """Sign a sensitivity YAML file in place after validating it.

    Returns:
        The signature written to the file
    """
    raw = _read_yaml(path, "Sensitivity config")
    _parse_sensitivity(raw)
    signature = sign_sensitivity_config(raw, signing_key)
    signed = {k: v for k, v in raw.items() if k != SIGNATURE_KEY}
    signed[SIGNATURE_KEY] = signature
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(signed, f, sort_keys=True)
    return signature


def load_sensitivity_table(path: str, signing_key: Optional[bytes] = None) -> SensitivityTable:
    """Load the sensitivity table from YAML, verifying its signature.

    Args:
        path: Path to YAML sensitivity file
        signing_key: Key the file must be signed with; when omitted the
            signature is not checked

    Raises:
        ConfigSignatureError: If a signing key is given and the file is unsigned or altered
        ValueError: If the table is invalid
    """
    raw = _read_yaml(path, "Sensitivity config")

    if signing_key is not None:
        signature = raw.get(SIGNATURE_KEY)
        if not isinstance(signature, str):
            raise ConfigSignatureError(f"Sensitivity config {path} is not signed")
        expected = sign_sensitivity_config(raw, signing_key)
        if not hmac.compare_digest(expected, signature):
            raise ConfigSignatureError(f"Sensitivity config {path} failed signature verification")
    else:
        logger.warning("Loading sensitivity config %s without signature verification", path)

    return _parse_sensitivity(raw)


def _parse_sensitivity(raw: Dict[str, Any]) -> SensitivityTable:
    allowed_top_keys = {'metrics', 'redaction', SIGNATURE_KEY}
    unknown_keys = set(raw.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown sensitivity keys: {unknown_keys}")

    if 'metrics' not in raw:
        raise ValueError("Missing required 'metrics' section")
    metrics = raw['metrics']
    if not isinstance(metrics, dict):
        raise ValueError("'metrics' must be a dictionary")

    entries = []
    for metric_name, data in metrics.items():
        entries.append(_parse_entry(str(metric_name), data))

    redaction = _parse_redaction(raw.get('redaction', {}))
    return SensitivityTable(entries, redaction)


def _parse_entry(metric_name: str, data: Any) -> SensitivityEntry:
    """Parse and validate one sensitivity entry.

    Raises:
        ValueError: If the entry is invalid
    """
    path = f"metrics.{metric_name}"
    if not isinstance(data, dict):
        raise ValueError(f"Metric '{metric_name}' must be a dictionary")

    allowed_keys = {'sensitivity', 'rationale', 'min', 'max'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'sensitivity' not in data:
        raise ValueError(f"Missing required 'sensitivity' in {path}")
    sensitivity = data['sensitivity']
    if isinstance(sensitivity, bool) or not isinstance(sensitivity, (int, float)) or sensitivity <= 0:
        raise ValueError(f"'sensitivity' in {path} must be > 0")

    if 'rationale' not in data:
        raise ValueError(f"Missing required 'rationale' in {path}")
    rationale = data['rationale']
    if not isinstance(rationale, str) or not rationale.strip():
        raise ValueError(f"'rationale' in {path} must be a non-empty string")

    bounds = {}
    for key in ('min', 'max'):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ValueError(f"'{key}' in {path} must be a number")
        bounds[key] = float(value) if value is not None else None

    return SensitivityEntry(
        metric_name=metric_name,
        sensitivity=float(sensitivity),
        rationale=rationale,
        min_value=bounds['min'],
        max_value=bounds['max'],
    )


def _parse_redaction(data: Any) -> RedactionPolicy:
    if not isinstance(data, dict):
        raise ValueError("'redaction' must be a dictionary")

    allowed_keys = {'free_text_fields', 'categorical_fields', 'patterns'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in redaction: {unknown_keys}")

    free_text = data.get('free_text_fields', ['notes'])
    if not isinstance(free_text, list) or not all(isinstance(f, str) for f in free_text):
        raise ValueError("'free_text_fields' in redaction must be a list of strings")

    categorical_data = data.get('categorical_fields', {})
    if not isinstance(categorical_data, dict):
        raise ValueError("'categorical_fields' in redaction must be a dictionary")
    categorical = {}
    for name, allowed in categorical_data.items():
        if not isinstance(allowed, list) or not all(isinstance(v, str) for v in allowed):
            raise ValueError(f"'categorical_fields.{name}' must be a list of strings")
        categorical[str(name)] = frozenset(v.lower() for v in allowed)

    patterns = data.get('patterns', list(DEFAULT_REDACTION_PATTERNS))
    if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
        raise ValueError("'patterns' in redaction must be a list of strings")

    overlap = set(free_text) & set(categorical)
    if overlap:
        raise ValueError(f"Fields cannot be both free text and categorical: {overlap}")

    try:
        return RedactionPolicy(
            free_text_fields=frozenset(free_text),
            categorical_fields=MappingProxyType(categorical),
            patterns=tuple(patterns),
        )
    except Exception as e:
        raise ValueError(f"Invalid redaction pattern: {e}") from e
