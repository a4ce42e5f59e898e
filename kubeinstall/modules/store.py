"""
Keyed record stores.

Every durable record (nodes, log entries, script templates, package sources)
is kept as a JSON document addressed by ``(collection, key)``.
"""
import json
import logging
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger("kubeinstall.store")

NODES = "nodes"
LOGS = "logs"
SCRIPTS = "scripts"
SETTINGS = "settings"


class RecordStore(ABC):
    """Durable get/put/delete over JSON records."""

    @abstractmethod
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def put(self, collection: str, key: str, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Delete a record, returning whether it existed."""

    @abstractmethod
    def list(self, collection: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def clear(self, collection: str) -> None:
        ...


class MemoryStore(RecordStore):
    """In-process store, used for tests and ``store.backend: memory``."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, collection, key):
        with self._lock:
            record = self._data.get(collection, {}).get(key)
            return dict(record) if record is not None else None

    def put(self, collection, key, record):
        with self._lock:
            self._data.setdefault(collection, {})[key] = dict(record)

    def delete(self, collection, key):
        with self._lock:
            return self._data.get(collection, {}).pop(key, None) is not None

    def list(self, collection):
        with self._lock:
            return [dict(r) for r in self._data.get(collection, {}).values()]

    def clear(self, collection):
        with self._lock:
            self._data.pop(collection, None)


class SQLiteStore(RecordStore):
    """Store backed by a single SQLite ``records`` table."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS records (
            collection TEXT NOT NULL,
            key TEXT NOT NULL,
            data TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (collection, key)
        )
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._write_lock = threading.Lock()
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self._connection() as conn:
            conn.execute(self.SCHEMA)
        logger.debug(f"Using SQLite record store at {db_path}")

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get(self, collection, key):
        with self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM records WHERE collection = ? AND key = ?", (collection, key)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, collection, key, record):
        payload = json.dumps(record)
        now = datetime.now(timezone.utc).isoformat()
        with self._write_lock, self._connection() as conn:
            conn.execute(
                "INSERT INTO records (collection, key, data, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(collection, key) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (collection, key, payload, now),
            )

    def delete(self, collection, key):
        with self._write_lock, self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE collection = ? AND key = ?", (collection, key)
            )
            return cursor.rowcount > 0

    def list(self, collection):
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT data FROM records WHERE collection = ? ORDER BY rowid", (collection,)
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def clear(self, collection):
        with self._write_lock, self._connection() as conn:
            conn.execute("DELETE FROM records WHERE collection = ?", (collection,))


def create_store(backend: str = "sqlite", path: str = "") -> RecordStore:
    """Create the record store named in configuration."""
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SQLiteStore(path)
    raise ValueError(f"Unknown store backend: {backend}")
