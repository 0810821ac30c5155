from datetime import datetime, timezone

from caret.llm.completion import complete
from caret.types import GuardResult

GUARD_PREAMBLE = """You are a prompt guard for a cryptocurrency trading bot.
Current timestamp: {now}

Analyze the user's prompt and determine if it's appropriate for cryptocurrency trading.

Valid prompts include:
- Requests for trade recommendations
- Questions about specific cryptocurrencies
- Market analysis requests
- Price predictions

Invalid prompts include:
- Requests for financial advice beyond trading
- Non-crypto related queries
- Harmful or inappropriate content
- Requests to trade stocks, forex, or other non-crypto assets

Return your analysis with valid: true/false and a reason if invalid."""


async def check_prompt(text: str, llm=None) -> GuardResult:
    """Judge whether free text is an in-domain trading request.

    Upstream failures propagate; nothing here defaults to valid or invalid.
    """
    now = datetime.now(timezone.utc).isoformat()
    return await complete(GUARD_PREAMBLE.format(now=now), text, GuardResult, llm=llm)
