import json
from datetime import datetime, timezone
from typing import Dict, Optional

from caret.config import tokens as catalog
from caret.llm.completion import complete
from caret.types import DecisionResult, PriceHistory

MIN_SIZE_PCT = 0.10
MAX_SIZE_PCT = 0.90

BASE_PREAMBLE = """You are an expert cryptocurrency trading analyst.
Current timestamp: {now}{balance}

Based on the user's prompt, token ticker, and price history data, provide a detailed trade recommendation.

Analyze:
- Price trends and patterns
- Volume indicators
- Support and resistance levels
- Risk management parameters
- User's available balance for trading
- Whether this should be a BUY or SELL operation based on the user's request
{closing}"""

ENRICHED_PREAMBLE = """You are an expert cryptocurrency trading analyst with access to comprehensive market data.
Current timestamp: {now}{balance}

Based on the user's prompt, target token, its price history, and additional market context, provide a detailed trade recommendation.

Analyze:
- Primary token price trends and patterns
- Volume indicators
- Support and resistance levels
- Correlation with other tokens
- Market sentiment from additional data
- Risk management parameters
- User's available balance for trading
- Whether this should be a BUY or SELL operation based on the user's request
{closing}"""

CLOSING = """
Provide specific entry, stop loss, and take profit levels with detailed reasoning.
Also suggest an appropriate trade amount (tradeAmount) in USDT that fits within the user's budget.
Set tradeType to "buy" for buying tokens with USDT, or "sell" for selling tokens to get USDT.

IMPORTANT: Return confidence as a percentage number between 0-100 (e.g., 75 for 75% confidence, not 0.75)."""


def sizing_instructions(wallet_balance: Optional[float]) -> str:
    """Prompt text for position sizing. The rule is not enforced here."""
    if wallet_balance is None:
        return (
            "\nUser's wallet balance: Unknown - provide general trade "
            "recommendation without specific amounts."
        )
    if wallet_balance <= 0:
        return (
            "\nUser's current USDT wallet balance: 0 USDT (the escrow is not funded yet).\n"
            "Suggest a small starter tradeAmount; the user has to fund the escrow before it can execute."
        )
    low = wallet_balance * MIN_SIZE_PCT
    high = wallet_balance * MAX_SIZE_PCT
    return (
        f"\nUser's current USDT wallet balance: {wallet_balance} USDT\n"
        "CRITICAL: For risk management, suggest trades using 10% to 90% of available "
        "balance based on risk assessment.\n"
        f"Available balance: {wallet_balance} USDT\n"
        f"Suggest between {low:.2f} USDT (10%) and {high:.2f} USDT (90%).\n"
        "Choose percentage based on trade confidence, market volatility, and risk level.\n"
        "Higher confidence = higher percentage (up to 90%), Lower confidence = lower "
        "percentage (down to 10%).\n"
        "NEVER suggest more than 90% or less than 10% of the balance."
    )


def _catalog_line() -> str:
    return "Available tokens: " + ", ".join(
        f"{t.symbol} ({t.name})" for t in catalog.tokens
    )


async def make_decision(
    text: str,
    ticker: str,
    history: PriceHistory,
    wallet_balance: Optional[float] = None,
    auxiliary: Optional[Dict[str, PriceHistory]] = None,
    llm=None,
) -> DecisionResult:
    """Produce a validated trade decision.

    When ``auxiliary`` is given (even empty, if every extra fetch failed)
    the enriched prompt is used and the extra series are attached as one
    knowledge block.
    """
    now = datetime.now(timezone.utc).isoformat()
    balance = sizing_instructions(wallet_balance)
    history_json = history.model_dump_json(indent=2)

    if auxiliary is not None:
        system = ENRICHED_PREAMBLE.format(now=now, balance=balance, closing=CLOSING)
        extra = json.dumps(
            {sym: h.model_dump() for sym, h in auxiliary.items()}, indent=2
        )
        knowledge = [
            f"Target Token Price History for {ticker}:\n{history_json}",
            f"Additional Market Data:\n{extra}",
            _catalog_line(),
        ]
    else:
        system = BASE_PREAMBLE.format(now=now, balance=balance, closing=CLOSING)
        knowledge = [
            f"Price History Data for {ticker}:\n{history_json}",
            _catalog_line(),
        ]

    return await complete(system, text, DecisionResult, knowledge=knowledge, llm=llm)
