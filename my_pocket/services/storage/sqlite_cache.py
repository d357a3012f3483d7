"""
SQLite Local Cache

DESIGN DECISION: SQLite is used on the device because:
1. It survives process restarts (the push queue must)
2. WAL mode keeps reads cheap while a write is committing
3. It ships with Python, no server to run

Rows are stored as JSON text in a single table keyed by
``(workspace_id, entity_type, entity_id)``.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

from my_pocket.models.ledger import utc_now
from my_pocket.services.storage.interface import LocalCacheStore, StorageError


logger = structlog.get_logger(__name__)


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS cache_entries (
    workspace_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (workspace_id, entity_type, entity_id)
);

CREATE INDEX IF NOT EXISTS ix_cache_scope ON cache_entries (workspace_id, entity_type);
"""


class SQLiteCacheStore(LocalCacheStore):
    """
    SQLite implementation of the local cache.

    One connection is held for the lifetime of the store; a lock
    serializes access so the store can be shared with worker threads.
    """

    def __init__(self, database_path: str = "my_pocket.db"):
        self._path = database_path
        if database_path != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(database_path, check_same_thread=False)
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open local cache at {database_path}: {e}") from e
        self._lock = threading.Lock()
        logger.debug("local_cache_opened", path=database_path)

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            try:
                cursor = self._conn.cursor()
                yield cursor
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StorageError(f"Local cache operation failed: {e}") from e

    def get(self, workspace_id: str, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT payload FROM cache_entries "
                "WHERE workspace_id = ? AND entity_type = ? AND entity_id = ?",
                (workspace_id, entity_type, entity_id),
            )
            row = cursor.fetchone()
        return json.loads(row[0]) if row else None

    def put(self, workspace_id: str, entity_type: str, entity_id: str, value: dict[str, Any]) -> None:
        payload = json.dumps(value, sort_keys=True)
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO cache_entries "
                "(workspace_id, entity_type, entity_id, payload, updated_at) VALUES (?, ?, ?, ?, ?)",
                (workspace_id, entity_type, entity_id, payload, utc_now().isoformat()),
            )

    def delete(self, workspace_id: str, entity_type: str, entity_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM cache_entries "
                "WHERE workspace_id = ? AND entity_type = ? AND entity_id = ?",
                (workspace_id, entity_type, entity_id),
            )
            return cursor.rowcount > 0

    def scan(self, workspace_id: str, entity_type: str) -> list[tuple[str, dict[str, Any]]]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT entity_id, payload FROM cache_entries "
                "WHERE workspace_id = ? AND entity_type = ? ORDER BY entity_id",
                (workspace_id, entity_type),
            )
            rows = cursor.fetchall()
        return [(entity_id, json.loads(payload)) for entity_id, payload in rows]

    def workspace_ids(self) -> list[str]:
        with self._cursor() as cursor:
            cursor.execute("SELECT DISTINCT workspace_id FROM cache_entries ORDER BY workspace_id")
            return [row[0] for row in cursor.fetchall()]

    def purge_workspace(self, workspace_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM cache_entries WHERE workspace_id = ?", (workspace_id,))
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
