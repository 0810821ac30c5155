import json
from datetime import datetime, timezone
from typing import Any, Dict

from caret.config import tokens as catalog
from caret.llm.completion import complete
from caret.types import AdviceResult, PriceHistory

ADVICE_PREAMBLE = """You are an expert cryptocurrency trading analyst providing general trading advice.
Current timestamp: {now}

The user has asked for trading advice without specifying a particular token.

Based on the current market data and user's request, provide:
1. General market insights
2. Suggest a specific token to trade (if appropriate)
3. Reasoning for your suggestion
4. Whether you need specific token price data to make a better recommendation

Available tokens: {symbols}

If you suggest a token, make sure it's from the available list."""


async def give_advice(
    text: str,
    market_summary: Dict[str, Any],
    cached: Dict[str, PriceHistory],
    llm=None,
) -> AdviceResult:
    now = datetime.now(timezone.utc).isoformat()
    system = ADVICE_PREAMBLE.format(now=now, symbols=", ".join(catalog.symbols()))
    knowledge = [f"Market Summary:\n{json.dumps(market_summary, indent=2)}"]
    if cached:
        data = {sym: h.model_dump()["points"] for sym, h in cached.items()}
        knowledge.append(f"Cached Price Data:\n{json.dumps(data, indent=2)}")
    return await complete(system, text, AdviceResult, knowledge=knowledge, llm=llm)
