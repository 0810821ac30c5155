from datetime import datetime, timezone

from caret.config import tokens as catalog
from caret.llm.completion import complete
from caret.types import TickerResult

TICKER_PREAMBLE = """You are a token ticker extraction agent.
Current timestamp: {now}

Analyze the user's prompt and extract the cryptocurrency ticker they want to trade.

Available tokens: {symbols}

If no specific token is mentioned, suggest the most relevant one based on context.
If multiple tokens are mentioned, pick the primary one for trading.

Remember: w(wrapped) tokens may be referred to by their original name."""


async def extract_ticker(text: str, llm=None) -> TickerResult:
    now = datetime.now(timezone.utc).isoformat()
    system = TICKER_PREAMBLE.format(now=now, symbols=", ".join(catalog.symbols()))
    return await complete(system, text, TickerResult, llm=llm)
