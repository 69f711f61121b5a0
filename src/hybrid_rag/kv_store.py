from __future__ import annotations
from typing import Any, Dict, List, Optional
import json
import sqlite3
import threading
from contextlib import closing
from pathlib import Path

from .cancellation import CancelToken, ensure_token
from .errors import StoreReadFailed, StoreWriteFailed


class SqliteKeyValueStore:
    """File-backed key-value store for chunks and document manifests."""

    def __init__(self, db_path: str | Path = "kv.db"):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=30)

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def put(self, key: str, value: Dict[str, Any], token: Optional[CancelToken] = None) -> None:
        ensure_token(token).raise_if_cancelled("kv put")
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute(
                    "REPLACE INTO kv (key, value) VALUES (?, ?)",
                    (key, json.dumps(value, ensure_ascii=False)),
                )
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"kv put {key} failed: {e}", stores=["kv"]) from e

    def get(self, key: str, token: Optional[CancelToken] = None) -> Optional[Dict[str, Any]]:
        ensure_token(token).raise_if_cancelled("kv get")
        try:
            with closing(self._connect()) as conn, conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StoreReadFailed(f"kv get {key} failed: {e}", store="kv") from e
        if row is None:
            return None
        return json.loads(row[0])

    def delete(self, key: str, token: Optional[CancelToken] = None) -> None:
        ensure_token(token).raise_if_cancelled("kv delete")
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise StoreWriteFailed(f"kv delete {key} failed: {e}", stores=["kv"]) from e

    def keys(self) -> List[str]:
        with closing(self._connect()) as conn, conn:
            rows = conn.execute("SELECT key FROM kv ORDER BY key").fetchall()
        return [row[0] for row in rows]


class InMemoryKeyValueStore:
    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, key, value, token=None) -> None:
        ensure_token(token).raise_if_cancelled("kv put")
        with self._lock:
            self._data[key] = json.dumps(value)

    def get(self, key, token=None) -> Optional[Dict[str, Any]]:
        ensure_token(token).raise_if_cancelled("kv get")
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def delete(self, key, token=None) -> None:
        ensure_token(token).raise_if_cancelled("kv delete")
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)
