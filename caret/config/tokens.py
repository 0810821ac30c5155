import os
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Token:
    symbol: str
    name: str
    cg_id: str


_DEFAULT_TOKENS = [
    Token("DUCK", "Duckchain Token", "duckchain-token"),
    Token("TON", "Toncoin", "toncoin"),
]


def _parse_tokens(val: str | None) -> List[Token]:
    """Parse CARET_TOKENS: JSON array of {symbol, name, cg_id} objects."""
    if not val:
        return list(_DEFAULT_TOKENS)
    items = json.loads(val)
    return [
        Token(i["symbol"].upper(), i.get("name", i["symbol"]), i["cg_id"])
        for i in items
        if i.get("cg_id")
    ]


# Tradable catalog, filtered to entries with a price-feed id
tokens: List[Token] = _parse_tokens(os.getenv("CARET_TOKENS"))


def symbols() -> List[str]:
    return [t.symbol for t in tokens]


def find(symbol: str) -> Optional[Token]:
    sym = (symbol or "").upper()
    return next((t for t in tokens if t.symbol == sym), None)


def load_definitions(path: str) -> Dict[str, Any]:
    """Load deployed contract addresses.

    Expected shape::

        {"USDT": {"address": "0x..."},
         "tokens": {"DUCK": {"address": "0x..."}}}

    A missing file yields an empty mapping; execution then reports
    every token as not configured.
    """
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f) or {}
