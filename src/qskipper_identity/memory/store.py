# src/qskipper_identity/memory/store.py

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

Value = Union[str, bool]


class DurableStore(Protocol):
    """
    Opaque synchronous key-value surface.

    Every write is durable when the call returns (the process may be
    suspended right after). Last write wins per key; no transactions.
    """

    def get(self, key: str) -> Optional[Value]: ...

    def set(self, key: str, value: Value) -> None: ...

    def remove(self, key: str) -> None: ...


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


class SqliteDurableStore:
    """
    SQLite-backed DurableStore.

    - one short-lived connection per operation, committed before returning
    - values are JSON-encoded so bools come back as bools
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _ensure_schema(self) -> None:
        conn = self._conn()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    # --- DurableStore ------------------------------------------------------

    def get(self, key: str) -> Optional[Value]:
        conn = self._conn()
        try:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        try:
            value = json.loads(row[0])
        except json.JSONDecodeError:
            # row written by something other than this class; hand it back raw
            return row[0]
        if isinstance(value, (str, bool)):
            return value
        return str(value)

    def set(self, key: str, value: Value) -> None:
        if not isinstance(value, (str, bool)):
            raise TypeError(f"DurableStore values must be str or bool, got {type(value).__name__}")
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                """,
                (key, json.dumps(value)),
            )
            conn.commit()
        finally:
            conn.close()

    def remove(self, key: str) -> None:
        conn = self._conn()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def keys(self, prefix: str = "") -> list[str]:
        conn = self._conn()
        try:
            rows = conn.execute(
                "SELECT key FROM kv_store WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_like_prefix(prefix),),
            ).fetchall()
        finally:
            conn.close()
        return [r[0] for r in rows]


def _like_prefix(prefix: str) -> str:
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "%"


class InMemoryDurableStore:
    """Dict-backed DurableStore for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, Value]] = None) -> None:
        self._data: Dict[str, Value] = dict(initial or {})

    def get(self, key: str) -> Optional[Value]:
        return self._data.get(key)

    def set(self, key: str, value: Value) -> None:
        if not isinstance(value, (str, bool)):
            raise TypeError(f"DurableStore values must be str or bool, got {type(value).__name__}")
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))
