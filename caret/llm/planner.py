from datetime import datetime, timezone

from caret.config import tokens as catalog
from caret.llm.completion import complete
from caret.types import ContextResult, PriceHistory

CONTEXT_PREAMBLE = """You are an expert cryptocurrency analyst reviewing if additional market data is needed.
Current timestamp: {now}

Given the user prompt, target token, and its price history, determine if you need additional context such as:
- Price data from other tokens for comparison
- Longer historical data (up to 15 days)
- Market correlation data

Be specific about what additional data would help make a better trading decision.
Available tokens: {symbols}"""


async def plan_context(
    text: str, ticker: str, history: PriceHistory, llm=None
) -> ContextResult:
    now = datetime.now(timezone.utc).isoformat()
    system = CONTEXT_PREAMBLE.format(now=now, symbols=", ".join(catalog.symbols()))
    knowledge = [
        f"Target Token: {ticker}",
        f"Price History for {ticker}:\n{history.model_dump_json(indent=2)}",
    ]
    return await complete(system, text, ContextResult, knowledge=knowledge, llm=llm)
