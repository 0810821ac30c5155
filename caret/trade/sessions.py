import time
from typing import Any, Callable, Dict, Optional

from caret.config import settings
from caret.store.kv import KeyValueStore

AWAITING_AGENT_NAME = "awaiting_agent_name"
AWAITING_INSTRUCTIONS = "awaiting_instructions"
AWAITING_TRADE_PROMPT = "awaiting_trade_prompt"
AWAITING_CUSTOM_AMOUNT = "awaiting_custom_amount"


class SessionStore:
    """One pending conversation step per user; the last write wins."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_sec: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_sec = settings.session_ttl_sec if ttl_sec is None else ttl_sec
        self.clock = clock

    @staticmethod
    def _key(user_key: int) -> str:
        return f"session:{user_key}"

    async def start(self, user_key: int, step: str, **data: Any) -> None:
        now = self.clock()
        await self.store.set(
            self._key(user_key),
            {"step": step, "data": data, "created_at": now},
            expires_at=now + self.ttl_sec,
        )

    async def get(self, user_key: int) -> Optional[Dict[str, Any]]:
        return await self.store.get(self._key(user_key))

    async def clear(self, user_key: int) -> None:
        await self.store.delete(self._key(user_key))

    async def sweep(self) -> int:
        return await self.store.sweep()
