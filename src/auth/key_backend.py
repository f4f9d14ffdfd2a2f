"""Persistence backends for the API key store.

The key store keeps every key in memory for lock-free lookups and writes each
change through one of these backends before publishing it to readers. Values
are the JSON serialization of ``ApiKey`` (secret digest included, plaintext
secret never).

Backends:
    - InMemoryKeyBackend: No persistence; the default and the test backend
    - SQLiteKeyBackend: Single-table SQLite file, one row per key uid

Dependencies:
    - sqlite3: For persistent storage
    - threading: For serializing writers
    - structlog: For logging

Called by:
    - src.auth.key_store: Loads on construction, writes on issue/patch/delete
    - src.container: Backend selection from settings
"""

import sqlite3
import threading
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger()


class KeyBackend(Protocol):
    def load_all(self) -> dict[str, str]: ...

    def put(self, uid: str, value: str) -> None: ...

    def delete(self, uid: str) -> None: ...


class InMemoryKeyBackend:
    """Dictionary backend; contents are lost when the process exits."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def load_all(self) -> dict[str, str]:
        return dict(self._values)

    def put(self, uid: str, value: str) -> None:
        self._values[uid] = value

    def delete(self, uid: str) -> None:
        self._values.pop(uid, None)


class SQLiteKeyBackend:
    """SQLite-backed key persistence.

    Thread Safety:
        Uses threading.Lock() so that writes from concurrent key management
        requests are applied one at a time. Each operation opens its own
        connection, so the backend can be shared between threads.
    """

    def __init__(self, db_path: str):
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS api_keys (
                    uid TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """
            )
            conn.commit()

    def load_all(self) -> dict[str, str]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute("SELECT uid, value FROM api_keys").fetchall()
        logger.info("Loaded persisted API keys", path=self.db_path, count=len(rows))
        return {uid: value for uid, value in rows}

    def put(self, uid: str, value: str) -> None:
        with self._lock:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO api_keys (uid, value) VALUES (?, ?)
                    ON CONFLICT(uid) DO UPDATE SET value = excluded.value
                """,
                    (uid, value),
                )
                conn.commit()

    def delete(self, uid: str) -> None:
        with self._lock:
            with sqlite3.connect(self.db_path) as conn:
                conn.execute("DELETE FROM api_keys WHERE uid = ?", (uid,))
                conn.commit()
