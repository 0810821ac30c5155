import time
from typing import Callable, List, Optional

from caret.store.db import Database
from caret.types import Agent

NAME_MIN, NAME_MAX = 3, 50
INSTRUCTIONS_MIN, INSTRUCTIONS_MAX = 10, 1000


def _row_to_agent(row: dict) -> Agent:
    return Agent(
        id=row["id"],
        owner_user_id=row["user_id"],
        name=row["agent_name"],
        instructions=row["instructions"],
        escrow_address=row["escrow_address"],
        created_at=row["created_at"],
    )


def check_agent_name(name: str) -> None:
    if len(name) < NAME_MIN:
        raise ValueError(f"Agent name must be at least {NAME_MIN} characters long.")
    if len(name) > NAME_MAX:
        raise ValueError(f"Agent name must be less than {NAME_MAX} characters.")


def check_instructions(text: str) -> None:
    if len(text) < INSTRUCTIONS_MIN:
        raise ValueError(
            f"Instructions must be at least {INSTRUCTIONS_MIN} characters long."
        )
    if len(text) > INSTRUCTIONS_MAX:
        raise ValueError(f"Instructions must be less than {INSTRUCTIONS_MAX} characters.")


class UserRegistry:
    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock

    async def user_id(self, telegram_id: int) -> Optional[int]:
        row = await self.db.fetch_one("SELECT id FROM users WHERE telegram_id = ?", (telegram_id,))
        return row["id"] if row else None

    async def register(self, telegram_id: int) -> int:
        existing = await self.user_id(telegram_id)
        if existing is not None:
            return existing
        return await self.db.run(
            "INSERT INTO users (telegram_id, accepted_terms_at) VALUES (?, ?)",
            (telegram_id, self.clock()),
        )


class AgentRegistry:
    """Agents per owner. Escrow addresses come from ``escrow_for(owner, name)``."""

    def __init__(
        self,
        db: Database,
        escrow_for: Callable[[int, str], str],
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.escrow_for = escrow_for
        self.clock = clock

    async def name_taken(self, owner_user_id: int, name: str) -> bool:
        row = await self.db.fetch_one(
            "SELECT id FROM user_agents WHERE user_id = ? AND agent_name = ?",
            (owner_user_id, name),
        )
        return row is not None

    async def create(self, owner_user_id: int, name: str, instructions: str) -> Agent:
        check_agent_name(name)
        check_instructions(instructions)
        if await self.name_taken(owner_user_id, name):
            raise ValueError("You already have an agent with this name.")
        escrow = self.escrow_for(owner_user_id, name)
        created_at = self.clock()
        agent_id = await self.db.run(
            "INSERT INTO user_agents (user_id, agent_name, instructions, escrow_address, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (owner_user_id, name, instructions, escrow, created_at),
        )
        return Agent(
            id=agent_id,
            owner_user_id=owner_user_id,
            name=name,
            instructions=instructions,
            escrow_address=escrow,
            created_at=created_at,
        )

    async def get(self, agent_id: int, owner_user_id: int) -> Optional[Agent]:
        row = await self.db.fetch_one(
            "SELECT * FROM user_agents WHERE id = ? AND user_id = ?", (agent_id, owner_user_id)
        )
        return _row_to_agent(row) if row else None

    async def list(self, owner_user_id: int) -> List[Agent]:
        rows = await self.db.fetch_all(
            "SELECT * FROM user_agents WHERE user_id = ? ORDER BY id", (owner_user_id,)
        )
        return [_row_to_agent(r) for r in rows]

    async def delete(self, agent_id: int, owner_user_id: int) -> bool:
        n = await self.db.run(
            "DELETE FROM user_agents WHERE id = ? AND user_id = ?", (agent_id, owner_user_id)
        )
        return n > 0
