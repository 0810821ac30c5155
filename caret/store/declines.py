import time
from typing import Callable, List

from caret.config import settings
from caret.store.db import Database
from caret.types import DeclinedTrade


class DeclineMemory:
    """Append-only log of rejected proposals, read back as negative examples."""

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    async def record(self, user_id: int, agent_id: int, snapshot: str) -> None:
        await self.db.run(
            "INSERT INTO declined_trades (user_id, agent_id, trade_data, declined_at) "
            "VALUES (?, ?, ?, ?)",
            (user_id, agent_id, snapshot, self.clock()),
        )

    async def recent(self, user_id: int, agent_id: int, limit: int | None = None) -> List[DeclinedTrade]:
        limit = min(limit or settings.decline_memory_limit, 5)
        rows = await self.db.fetch_all(
            "SELECT user_id, agent_id, trade_data, declined_at FROM declined_trades "
            "WHERE user_id = ? AND agent_id = ? ORDER BY declined_at DESC, id DESC LIMIT ?",
            (user_id, agent_id, limit),
        )
        return [
            DeclinedTrade(
                owner_user_id=r["user_id"],
                agent_id=r["agent_id"],
                proposal_snapshot=r["trade_data"],
                declined_at=r["declined_at"],
            )
            for r in rows
        ]

    async def forget_agent(self, user_id: int, agent_id: int) -> int:
        return await self.db.run(
            "DELETE FROM declined_trades WHERE user_id = ? AND agent_id = ?",
            (user_id, agent_id),
        )
