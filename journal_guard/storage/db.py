"""
Database connection management.

Every vault operation opens its own short-lived connection from a worker
thread. WAL journaling lets readers proceed while one writer commits, and the
busy timeout makes a second writer wait for the lock instead of failing.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "journal_guard.db"
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the vault database.

    Args:
        db_path: Path to SQLite database file; missing parent directories are created

    Returns:
        SQLite connection in WAL mode with foreign keys and a busy timeout set
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
