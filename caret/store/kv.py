"""Expiring key-value storage for ephemeral records (proposals, sessions).

``InMemoryStore`` keeps entries in a process-local dict. ``SqliteStore``
keeps them in the shared database so several workers on one host see the
same proposals. Call sites only use the ``KeyValueStore`` methods.
"""

import abc
import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from caret.store.db import Database

Value = Dict[str, Any]


class KeyValueStore(abc.ABC):
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Value]:
        """Return the live value, or None if missing or expired."""

    @abc.abstractmethod
    async def set(self, key: str, value: Value, expires_at: Optional[float] = None) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def pop(self, key: str) -> Optional[Value]:
        """Atomically read and delete. At most one caller gets the value."""

    @abc.abstractmethod
    async def replace(
        self, key: str, value: Value, match: Value, expires_at: Optional[float] = None
    ) -> bool:
        """Overwrite a live entry only if its current fields equal ``match``.

        Returns False (and writes nothing) when the key is gone, expired, or
        was changed by someone else since it was read.
        """

    @abc.abstractmethod
    async def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""

    @abc.abstractmethod
    async def items(self) -> List[Tuple[str, Value]]:
        ...


class InMemoryStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._data: Dict[str, Tuple[Value, Optional[float]]] = {}

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and self.clock() >= expires_at

    async def get(self, key: str) -> Optional[Value]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if self._expired(entry[1]):
            del self._data[key]
            return None
        return dict(entry[0])

    async def set(self, key: str, value: Value, expires_at: Optional[float] = None) -> None:
        self._data[key] = (dict(value), expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def pop(self, key: str) -> Optional[Value]:
        entry = self._data.pop(key, None)
        if entry is None or self._expired(entry[1]):
            return None
        return entry[0]

    async def replace(
        self, key: str, value: Value, match: Value, expires_at: Optional[float] = None
    ) -> bool:
        entry = self._data.get(key)
        if entry is None or self._expired(entry[1]):
            return False
        current = entry[0]
        if any(current.get(k) != v for k, v in match.items()):
            return False
        self._data[key] = (dict(value), expires_at)
        return True

    async def sweep(self) -> int:
        dead = [k for k, (_, exp) in self._data.items() if self._expired(exp)]
        for k in dead:
            del self._data[k]
        return len(dead)

    async def items(self) -> List[Tuple[str, Value]]:
        return [(k, dict(v)) for k, (v, exp) in self._data.items() if not self._expired(exp)]

    def __len__(self) -> int:
        return len(self._data)


class SqliteStore(KeyValueStore):
    def __init__(self, db: Database, namespace: str, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.db = db
        self.namespace = namespace

    def _live(self, row: Optional[Dict[str, Any]]) -> Optional[Value]:
        if row is None:
            return None
        if row["expires_at"] is not None and self.clock() >= row["expires_at"]:
            return None
        return json.loads(row["value"])

    async def get(self, key: str) -> Optional[Value]:
        row = await self.db.fetch_one(
            "SELECT value, expires_at FROM kv_store WHERE namespace = ? AND key = ?",
            (self.namespace, key),
        )
        value = self._live(row)
        if row is not None and value is None:
            await self.delete(key)
        return value

    async def set(self, key: str, value: Value, expires_at: Optional[float] = None) -> None:
        await self.db.run(
            "INSERT INTO kv_store (namespace, key, value, expires_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value, "
            "expires_at = excluded.expires_at",
            (self.namespace, key, json.dumps(value), expires_at),
        )

    async def delete(self, key: str) -> bool:
        n = await self.db.run(
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?", (self.namespace, key)
        )
        return n > 0

    async def pop(self, key: str) -> Optional[Value]:
        # fetch_all drains the cursor so the DELETE completes before we return
        rows = await self.db.fetch_all(
            "DELETE FROM kv_store WHERE namespace = ? AND key = ? RETURNING value, expires_at",
            (self.namespace, key),
        )
        return self._live(rows[0] if rows else None)

    async def replace(
        self, key: str, value: Value, match: Value, expires_at: Optional[float] = None
    ) -> bool:
        sql = (
            "UPDATE kv_store SET value = ?, expires_at = ? "
            "WHERE namespace = ? AND key = ? AND (expires_at IS NULL OR expires_at > ?)"
        )
        params: List[Any] = [json.dumps(value), expires_at, self.namespace, key, self.clock()]
        for field, expected in match.items():
            sql += " AND json_extract(value, ?) = ?"
            params += [f"$.{field}", expected]
        return await self.db.run(sql, params) > 0

    async def sweep(self) -> int:
        return await self.db.run(
            "DELETE FROM kv_store WHERE namespace = ? AND expires_at IS NOT NULL AND expires_at <= ?",
            (self.namespace, self.clock()),
        )

    async def items(self) -> List[Tuple[str, Value]]:
        rows = await self.db.fetch_all(
            "SELECT key, value, expires_at FROM kv_store WHERE namespace = ?", (self.namespace,)
        )
        out = []
        for row in rows:
            value = self._live(row)
            if value is not None:
                out.append((row["key"], value))
        return out
