"""
Data models for storage layer.

Defines the persisted record envelopes and their JSON wire format.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Union

from journal_guard.core.errors import IntegrityError

CURRENT_RECORD_VERSION = 1


class FormatTag(Enum):
    """Envelope formats a stored record can be in."""
    CURRENT_AEAD = "current"
    LEGACY = "legacy"


@dataclass(frozen=True)
class EncryptedRecord:
    """Current-format envelope written by every new put.

    The nonce is drawn fresh for each write and never reused with the same key.
    """
    nonce: bytes
    ciphertext: bytes
    record_version: int = CURRENT_RECORD_VERSION
    format_tag: FormatTag = field(default=FormatTag.CURRENT_AEAD)


@dataclass(frozen=True)
class LegacyRecord:
    """Envelope from the previous storage format. Read-only."""
    iv: bytes
    data: bytes
    format_tag: FormatTag = field(default=FormatTag.LEGACY)


StoredRecord = Union[EncryptedRecord, LegacyRecord]

_CURRENT_KEYS = {"formatTag", "nonce", "ciphertext", "recordVersion"}
_LEGACY_KEYS = {"iv", "data"}
_TAGGED_LEGACY_KEYS = {"formatTag", "nonce", "ciphertext"}


def is_current_shape(wire: Dict[str, Any]) -> bool:
    return wire.get("formatTag") == FormatTag.CURRENT_AEAD.value


def is_legacy_shape(wire: Dict[str, Any]) -> bool:
    """Untagged {iv, data} envelopes and envelopes tagged "legacy"."""
    if "formatTag" not in wire:
        return _LEGACY_KEYS <= set(wire)
    return wire["formatTag"] == FormatTag.LEGACY.value


def encode_record(record: EncryptedRecord) -> Dict[str, Any]:
    """Serialize a current-format record to its wire dictionary."""
    return {
        "formatTag": record.format_tag.value,
        "nonce": base64.b64encode(record.nonce).decode("ascii"),
        "ciphertext": base64.b64encode(record.ciphertext).decode("ascii"),
        "recordVersion": record.record_version,
    }


def decode_record(wire: Dict[str, Any]) -> StoredRecord:
    """Parse a wire dictionary into one of the two documented envelopes.

    Raises:
        IntegrityError: If the dictionary matches neither shape
    """
    if not isinstance(wire, dict):
        raise IntegrityError("stored record is not an object")

    try:
        if is_current_shape(wire):
            missing = _CURRENT_KEYS - set(wire)
            if missing:
                raise IntegrityError(f"current record missing fields: {sorted(missing)}")
            version = wire["recordVersion"]
            if not isinstance(version, int) or isinstance(version, bool):
                raise IntegrityError("recordVersion must be an integer")
            return EncryptedRecord(
                nonce=base64.b64decode(wire["nonce"], validate=True),
                ciphertext=base64.b64decode(wire["ciphertext"], validate=True),
                record_version=version,
            )
        if is_legacy_shape(wire) and "formatTag" in wire:
            missing = _TAGGED_LEGACY_KEYS - set(wire)
            if missing:
                raise IntegrityError(f"legacy record missing fields: {sorted(missing)}")
            # Tagged legacy envelopes carry the IV as nonce and the sealed data as ciphertext
            return LegacyRecord(
                iv=base64.b64decode(wire["nonce"], validate=True),
                data=base64.b64decode(wire["ciphertext"], validate=True),
            )
        if is_legacy_shape(wire):
            return LegacyRecord(
                iv=base64.b64decode(wire["iv"], validate=True),
                data=base64.b64decode(wire["data"], validate=True),
            )
    except (binascii.Error, ValueError, TypeError) as e:
        raise IntegrityError(f"stored record is not valid base64: {e}") from e

    raise IntegrityError("stored record has an unrecognized shape")
