"""
Repository pattern for data access.

Handles the SQLite tables behind the vault: encrypted records, the schema
version marker and vault metadata, privacy budget ledgers and audit events.
All methods are synchronous; async callers run them with asyncio.to_thread.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection

SCHEMA_VERSION_KEY = "schema_version"
VAULT_METADATA_KEY = "vault_metadata"

Stores = Dict[str, Dict[str, Dict[str, Any]]]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the vault tables if they don't exist.

    Does not write a schema version marker; the migration engine owns it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                store_id TEXT NOT NULL,
                record_key TEXT NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (store_id, record_key)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS privacy_budget_ledger (
                user_id TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                epsilon_consumed REAL NOT NULL,
                epsilon_limit REAL NOT NULL,
                PRIMARY KEY (user_id, window_start)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                subject TEXT,
                details TEXT NOT NULL,
                signature TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class RecordRepository:
    """Repository for encrypted record envelopes and vault metadata.

    Envelopes are stored as JSON text; this layer never sees plaintext.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_meta(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set_meta(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def get_schema_version(self) -> Optional[int]:
        """Return the stored schema version, or None if no marker exists."""
        value = self.get_meta(SCHEMA_VERSION_KEY)
        return int(value) if value is not None else None

    def read_record(self, store_id: str, key: str) -> Optional[Dict[str, Any]]:
        """Read one wire envelope.

        Returns:
            The decoded JSON object, or None if the record does not exist
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT payload FROM records WHERE store_id = ? AND record_key = ?",
                (store_id, key),
            ).fetchone()
            return json.loads(row[0]) if row else None
        finally:
            conn.close()

    def write_record(self, store_id: str, key: str, wire: Dict[str, Any]) -> None:
        """Insert or replace a single wire envelope in one transaction."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO records (store_id, record_key, payload) VALUES (?, ?, ?) "
                "ON CONFLICT(store_id, record_key) DO UPDATE SET payload = excluded.payload",
                (store_id, key, json.dumps(wire, sort_keys=True)),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_record(self, store_id: str, key: str) -> bool:
        """Delete a record row, dropping its ciphertext and nonce.

        Returns:
            True if a row was removed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM records WHERE store_id = ? AND record_key = ?",
                (store_id, key),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def list_keys(self, store_id: str) -> List[str]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT record_key FROM records WHERE store_id = ? ORDER BY record_key",
                (store_id,),
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def store_counts(self) -> Dict[str, int]:
        """Return the number of records per store."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT store_id, COUNT(*) FROM records GROUP BY store_id ORDER BY store_id"
            )
            return {row[0]: row[1] for row in cursor.fetchall()}
        finally:
            conn.close()

    def load_stores(self) -> Stores:
        """Load every envelope, grouped by store, for the migration engine."""
        conn = get_connection(self.db_path)
        try:
            stores: Stores = {}
            cursor = conn.execute("SELECT store_id, record_key, payload FROM records")
            for store_id, key, payload in cursor.fetchall():
                stores.setdefault(store_id, {})[key] = json.loads(payload)
            return stores
        finally:
            conn.close()

    def commit_migration(self, before: Stores, after: Stores, version: int) -> Tuple[int, int]:
        """Apply the difference between two store snapshots and bump the version.

        Only rows that changed are touched. The row changes and the new
        version marker are committed together or not at all.

        Returns:
            (rows written, rows removed)
        """
        removed = [
            (store_id, key)
            for store_id, records in before.items()
            for key in records
            if key not in after.get(store_id, {})
        ]
        written = [
            (store_id, key, json.dumps(wire, sort_keys=True))
            for store_id, records in after.items()
            for key, wire in records.items()
            if before.get(store_id, {}).get(key) != wire
        ]

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for store_id, key in removed:
                conn.execute(
                    "DELETE FROM records WHERE store_id = ? AND record_key = ?",
                    (store_id, key),
                )
            for store_id, key, payload in written:
                conn.execute(
                    "INSERT INTO records (store_id, record_key, payload) VALUES (?, ?, ?) "
                    "ON CONFLICT(store_id, record_key) DO UPDATE SET payload = excluded.payload",
                    (store_id, key, payload),
                )
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (SCHEMA_VERSION_KEY, str(version)),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return len(written), len(removed)

    def commit_rekey(self, stores: Stores, metadata: str) -> int:
        """Replace record envelopes and the vault metadata together.

        Only existing rows are updated, so a record deleted while the new
        envelopes were prepared stays deleted.

        Returns:
            Number of rows rewritten
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            rewritten = 0
            for store_id, records in stores.items():
                for key, wire in records.items():
                    cursor = conn.execute(
                        "UPDATE records SET payload = ? WHERE store_id = ? AND record_key = ?",
                        (json.dumps(wire, sort_keys=True), store_id, key),
                    )
                    rewritten += cursor.rowcount
            conn.execute(
                "INSERT INTO meta (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (VAULT_METADATA_KEY, metadata),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return rewritten

    def wipe(self) -> None:
        """Remove every record, ledger row, audit event and metadata entry."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for table in ("records", "privacy_budget_ledger", "audit_event", "meta"):
                conn.execute(f"DELETE FROM {table}")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


class LedgerRepository:
    """Repository for per-user, per-window privacy budget ledger rows."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def fetch(self, user_id: str, window_start: datetime) -> Optional[Tuple[str, str, float, float]]:
        """Return (window_start, window_end, epsilon_consumed, epsilon_limit) or None."""
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                """
                SELECT window_start, window_end, epsilon_consumed, epsilon_limit
                FROM privacy_budget_ledger
                WHERE user_id = ? AND window_start = ?
                """,
                (user_id, window_start.isoformat()),
            ).fetchone()
        finally:
            conn.close()

    def compare_and_set(
        self,
        user_id: str,
        window_start: datetime,
        window_end: datetime,
        expected_consumed: float,
        new_consumed: float,
        epsilon_limit: float,
    ) -> bool:
        """Write a ledger row only if its consumption still equals *expected_consumed*.

        Returns:
            True if the row was written
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT epsilon_consumed FROM privacy_budget_ledger "
                "WHERE user_id = ? AND window_start = ?",
                (user_id, window_start.isoformat()),
            ).fetchone()
            current = row[0] if row else 0.0
            if current != expected_consumed:
                conn.rollback()
                return False
            conn.execute(
                """
                INSERT INTO privacy_budget_ledger
                (user_id, window_start, window_end, epsilon_consumed, epsilon_limit)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, window_start) DO UPDATE SET
                    epsilon_consumed = excluded.epsilon_consumed,
                    epsilon_limit = excluded.epsilon_limit
                """,
                (
                    user_id,
                    window_start.isoformat(),
                    window_end.isoformat(),
                    new_consumed,
                    epsilon_limit,
                ),
            )
            conn.commit()
            return True
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def purge_before(self, cutoff: datetime) -> int:
        """Delete ledger rows whose window ended at or before *cutoff*."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM privacy_budget_ledger WHERE window_end <= ?",
                (cutoff.isoformat(),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


def insert_audit_event(
    timestamp: datetime,
    event_type: str,
    subject: Optional[str],
    details: Dict[str, Any],
    signature: str,
    db_path: str = DEFAULT_DB_PATH,
) -> None:
    """Append a signed audit event. Audit rows are never updated."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO audit_event (timestamp, event_type, subject, details, signature)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                timestamp.isoformat(),
                event_type,
                subject,
                json.dumps(details, sort_keys=True),
                signature,
            ),
        )
        conn.commit()
    finally:
        conn.close()


def fetch_audit_events(limit: int = 100, db_path: str = DEFAULT_DB_PATH) -> List[Dict[str, Any]]:
    """Fetch audit events, newest first."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            SELECT timestamp, event_type, subject, details, signature
            FROM audit_event ORDER BY id DESC LIMIT ?
            """,
            (limit,),
        )
        return [
            {
                "timestamp": datetime.fromisoformat(row[0]),
                "event_type": row[1],
                "subject": row[2],
                "details": json.loads(row[3]),
                "signature": row[4],
            }
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()
