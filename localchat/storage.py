"""
Durable key/value storage for session history.

Uses SQLite to keep text values under string keys, so chat history survives
application restarts. An in-memory store with the same interface is provided
for ephemeral sessions.
"""

import logging
import sqlite3
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Synchronous text store. Writes may raise; callers handle failures."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """Store that lives only as long as the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite database holding one row per key."""

    def __init__(self, db_path: str = "localchat.db"):
        """
        Initialize the key/value database.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._local = threading.local()  # Thread-local storage for connections
        self._write_lock = threading.Lock()
        self._initialize_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, timeout=30.0)
            # Enable WAL mode so readers never block the writer
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            logger.debug(
                f"Created new connection for thread {threading.current_thread().name}"
            )
        return self._local.conn

    def _initialize_database(self):
        """Create the schema if it doesn't exist."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
        logger.debug(f"Key/value store initialized: {self.db_path}")

    def get(self, key: str) -> Optional[str]:
        cursor = self._get_connection().execute(
            "SELECT value FROM kv_store WHERE key = ?", (key,)
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self._write_lock:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
            """,
                (key, value),
            )
            conn.commit()
        logger.debug(f"Stored {key} ({len(value)} chars)")

    def remove(self, key: str) -> None:
        with self._write_lock:
            conn = self._get_connection()
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def close(self):
        """Close the connection of the calling thread."""
        if hasattr(self._local, "conn") and self._local.conn is not None:
            self._local.conn.close()
            self._local.conn = None
