"""
Per-device key-value stores holding the ledger and accumulator state.

The engine treats persisted state as opaque JSON-compatible blobs behind the
DeviceStore protocol:

- get(key): return the stored value, or ``None`` when absent.
- set(key, value): replace the stored value.
- delete(key): remove the key; missing keys are ignored.
- set_many(values): write several keys in one commit; a ``None`` value
  deletes its key. Ledger transactions rely on it so a flush never
  partially applies.

Implementations:
- MemoryStore: in-process dict; values are round-tripped through JSON so
  callers never share mutable objects with the store.
- SqliteStore: async SQLite (WAL mode) table ``kv`` keyed by
  ``(device_id, key)``; survives process restarts.

CHANGELOG:
- 2026-10-13: Add SqliteStore
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiosqlite

STATISTICS_KEY = "statistics"
GRID_COUNTER_ACCUMULATOR_KEY = "grid_counter_accumulator"


@runtime_checkable
class DeviceStore(Protocol):
    """Async key-value store scoped to one device."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def set_many(self, values: dict[str, Any]) -> None: ...


class MemoryStore:
    """In-memory DeviceStore.

    Values are stored as JSON text, so a value that is not JSON-serializable
    fails at ``set`` time exactly as it would with a persistent store.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def set_many(self, values: dict[str, Any]) -> None:
        encoded = {k: json.dumps(v) for k, v in values.items() if v is not None}
        for key, value in values.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = encoded[key]


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS kv (
    device_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (device_id, key)
);
"""

_SELECT_SQL = """\
SELECT value FROM kv WHERE device_id = ? AND key = ?;
"""

_UPSERT_SQL = """\
INSERT INTO kv (device_id, key, value, updated_at)
VALUES (?, ?, ?, datetime('now'))
ON CONFLICT (device_id, key)
DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
"""

_DELETE_SQL = """\
DELETE FROM kv WHERE device_id = ? AND key = ?;
"""


class SqliteStore:
    """DeviceStore backed by an async SQLite database file.

    Uses WAL journal mode for crash durability. Several stores (one per
    device) may point at the same database file.

    Args:
        path: Filesystem path for the SQLite database file.
        device_id: Device whose keys this store reads and writes.

    Usage::

        async with SqliteStore(path="/data/settlement.db", device_id="venus-1") as store:
            await store.set("statistics", [])
            entries = await store.get("statistics")
    """

    def __init__(self, path: str | Path, device_id: str) -> None:
        self._path = Path(path)
        self._device_id = device_id
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Return the decoded value for *key*, or ``None`` when absent."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        cursor = await self._db.execute(_SELECT_SQL, (self._device_id, key))
        row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        """Store *value* (JSON-serializable) under *key*."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_UPSERT_SQL, (self._device_id, key, json.dumps(value)))
        await self._db.commit()

    async def delete(self, key: str) -> None:
        """Remove *key*; a missing key is a no-op."""
        assert self._db is not None, "Store not opened. Call open() or use async with."
        await self._db.execute(_DELETE_SQL, (self._device_id, key))
        await self._db.commit()

    async def set_many(self, values: dict[str, Any]) -> None:
        """Write all *values* in a single transaction.

        A ``None`` value deletes its key. Nothing is written if any value
        fails to serialize or any statement fails.
        """
        assert self._db is not None, "Store not opened. Call open() or use async with."
        encoded = {k: json.dumps(v) for k, v in values.items() if v is not None}
        try:
            for key, value in values.items():
                if value is None:
                    await self._db.execute(_DELETE_SQL, (self._device_id, key))
                else:
                    await self._db.execute(_UPSERT_SQL, (self._device_id, key, encoded[key]))
        except Exception:
            await self._db.rollback()
            raise
        await self._db.commit()
