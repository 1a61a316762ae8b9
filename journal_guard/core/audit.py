"""
Signed audit trail for privacy-relevant events.

Events never carry a raw user id: subjects are HMAC digests under the audit
key, and every event is signed with HMAC-SHA256 over its canonical JSON form.
"""

import asyncio
import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from journal_guard.storage.db import DEFAULT_DB_PATH
from journal_guard.storage.repository import insert_audit_event


def subject_digest(audit_key: bytes, user_id: str) -> str:
    """One-way, keyed identifier for *user_id* safe to store and log."""
    digest = hmac.new(audit_key, user_id.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest[:16]).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class AuditEvent:
    """Immutable, signed audit record."""
    timestamp: datetime
    event_type: str
    subject: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    signature: str = ""

    def canonical(self) -> bytes:
        return json.dumps(
            {
                "timestamp": self.timestamp.isoformat(),
                "event_type": self.event_type,
                "subject": self.subject,
                "details": self.details,
            },
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")


def sign_event(audit_key: bytes, event: AuditEvent) -> str:
    return hmac.new(audit_key, event.canonical(), hashlib.sha256).hexdigest()


def verify_event(audit_key: bytes, event: AuditEvent) -> bool:
    return hmac.compare_digest(sign_event(audit_key, event), event.signature)


class AuditSink(Protocol):
    """Append-only destination for audit events."""

    async def append(self, event_type: str, user_id: Optional[str], details: Dict[str, Any]) -> AuditEvent:
        ...


class InMemoryAuditSink:
    """Audit sink that keeps signed events in process memory."""

    def __init__(self, audit_key: bytes):
        self._audit_key = audit_key
        self._events: List[AuditEvent] = []

    def _build(self, event_type: str, user_id: Optional[str], details: Dict[str, Any]) -> AuditEvent:
        unsigned = AuditEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            subject=subject_digest(self._audit_key, user_id) if user_id is not None else None,
            details=dict(details),
        )
        return AuditEvent(
            timestamp=unsigned.timestamp,
            event_type=unsigned.event_type,
            subject=unsigned.subject,
            details=unsigned.details,
            signature=sign_event(self._audit_key, unsigned),
        )

    async def append(self, event_type: str, user_id: Optional[str], details: Dict[str, Any]) -> AuditEvent:
        event = self._build(event_type, user_id, details)
        self._events.append(event)
        return event

    @property
    def events(self) -> List[AuditEvent]:
        return list(self._events)


class SqliteAuditSink(InMemoryAuditSink):
    """Audit sink that also appends every event to the audit_event table."""

    def __init__(self, audit_key: bytes, db_path: str = DEFAULT_DB_PATH):
        super().__init__(audit_key)
        self.db_path = db_path

    async def append(self, event_type: str, user_id: Optional[str], details: Dict[str, Any]) -> AuditEvent:
        event = self._build(event_type, user_id, details)
        await asyncio.to_thread(
            insert_audit_event,
            event.timestamp,
            event.event_type,
            event.subject,
            event.details,
            event.signature,
            self.db_path,
        )
        self._events.append(event)
        return event
