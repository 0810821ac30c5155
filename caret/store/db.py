import asyncio
import sqlite3
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from caret.config import settings

logger = logging.getLogger("caret.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id INTEGER NOT NULL UNIQUE,
    accepted_terms_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS user_agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    agent_name TEXT NOT NULL,
    instructions TEXT NOT NULL,
    escrow_address TEXT NOT NULL,
    created_at REAL NOT NULL,
    UNIQUE (user_id, agent_name)
);
CREATE TABLE IF NOT EXISTS declined_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    agent_id INTEGER NOT NULL,
    trade_data TEXT NOT NULL,
    declined_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_declined_user_agent
    ON declined_trades (user_id, agent_id, declined_at);
CREATE TABLE IF NOT EXISTS kv_store (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    expires_at REAL,
    PRIMARY KEY (namespace, key)
);
"""


class Database:
    """Thin sqlite3 wrapper; every query runs off the event loop."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.db_path
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        # one connection shared across worker threads; sqlite serializes writes
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()

    def migrate(self) -> None:
        self._conn.executescript(SCHEMA)
        logger.info(f"[db] schema ready at {self.path}")

    def _execute(self, sql: str, params: Sequence[Any]) -> sqlite3.Cursor:
        return self._conn.execute(sql, tuple(params))

    async def run(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write; returns lastrowid for inserts, else rowcount."""
        async with self._lock:
            cur = await asyncio.to_thread(self._execute, sql, params)
        return cur.lastrowid if sql.lstrip().upper().startswith("INSERT") else cur.rowcount

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = await asyncio.to_thread(lambda: self._execute(sql, params).fetchone())
        return dict(row) if row else None

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = await asyncio.to_thread(lambda: self._execute(sql, params).fetchall())
        return [dict(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
