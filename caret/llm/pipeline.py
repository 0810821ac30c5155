import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Union

from caret.config import settings
from caret.errors import PriceHistoryError, PromptRejected
from caret.llm.advice import give_advice
from caret.llm.decision import make_decision
from caret.llm.guard import check_prompt
from caret.llm.planner import plan_context
from caret.llm.ticker import extract_ticker
from caret.market.coingecko import MAX_LOOKBACK_DAYS, PriceHistorySource
from caret.types import (
    AdviceResult,
    ContextResult,
    DecisionResult,
    PriceHistory,
    TickerResult,
)

logger = logging.getLogger("caret.pipeline")


@dataclass
class DecisionOutcome:
    ticker: TickerResult
    history: PriceHistory
    decision: DecisionResult
    context: Optional[ContextResult] = None
    auxiliary: Dict[str, PriceHistory] = field(default_factory=dict)


@dataclass
class AdviceOutcome:
    ticker: TickerResult
    advice: AdviceResult
    market_summary: dict


PipelineOutcome = Union[DecisionOutcome, AdviceOutcome]


def build_agent_prompt(
    request: str, instructions: str, declined_snapshots: Iterable[str] = ()
) -> str:
    """Compose the text sent through the pipeline for one agent."""
    prompt = f'TRADE REQUEST: "{request}"\n\n'
    prompt += "Please analyze this specific trade request and provide a recommendation.\n\n"
    prompt += f'My general trading strategy for context: "{instructions}"\n\n'
    prompt += (
        "Generate a specific trade suggestion based on the request above, "
        "considering both the request and my trading strategy.\n\n"
    )

    lines = []
    for snapshot in declined_snapshots:
        try:
            data = json.loads(snapshot)
        except json.JSONDecodeError:
            continue
        lines.append(
            f"{len(lines) + 1}. {data.get('token_symbol')} "
            f"{data.get('trade_type', 'buy')} - {data.get('reasoning', '')}"
        )
    if lines:
        prompt += (
            "\nFor context, here are some recent trade suggestions I declined "
            "(avoid suggestions similar to these):\n"
        )
        prompt += "\n".join(lines) + "\n"
    return prompt


class TradePipeline:
    """Guard, ticker, price history, context planning and decision, in order.

    Any failure raises before a decision exists.
    """

    def __init__(self, prices: PriceHistorySource, llm=None, history_days: Optional[int] = None):
        self.prices = prices
        self.llm = llm
        self.history_days = history_days or settings.default_history_days

    async def fetch_auxiliary(
        self, context: ContextResult, primary: str
    ) -> Dict[str, PriceHistory]:
        days = min(context.requested_days or self.history_days, MAX_LOOKBACK_DAYS)
        days = max(days, 1)
        auxiliary: Dict[str, PriceHistory] = {}
        for symbol in context.requested_tokens or []:
            symbol = symbol.upper()
            if symbol == primary or symbol in auxiliary:
                continue
            try:
                auxiliary[symbol] = await self.prices.get(symbol, days)
            except PriceHistoryError as e:
                logger.warning(f"[pipeline] skipping auxiliary {symbol}: {e}")
        return auxiliary

    async def run(self, text: str, wallet_balance: Optional[float] = None) -> PipelineOutcome:
        logger.info("[pipeline] running prompt guard")
        guard = await check_prompt(text, llm=self.llm)
        if not guard.valid:
            raise PromptRejected(guard.reason)

        logger.info("[pipeline] extracting ticker")
        ticker = await extract_ticker(text, llm=self.llm)

        if not ticker.found:
            logger.info("[pipeline] no ticker found, giving generic advice")
            summary = self.prices.market_summary()
            advice = await give_advice(text, summary, self.prices.cached(), llm=self.llm)
            return AdviceOutcome(ticker=ticker, advice=advice, market_summary=summary)

        logger.info(f"[pipeline] fetching price history for {ticker.ticker}")
        history = await self.prices.get(ticker.ticker, self.history_days)

        logger.info("[pipeline] checking if more context is needed")
        context = await plan_context(text, ticker.ticker, history, llm=self.llm)

        auxiliary = None
        if context.needs_more_context and context.requested_tokens:
            logger.info(
                f"[pipeline] additional data requested for: {', '.join(context.requested_tokens)}"
            )
            auxiliary = await self.fetch_auxiliary(context, ticker.ticker)

        logger.info("[pipeline] making trade decision")
        decision = await make_decision(
            text, ticker.ticker, history, wallet_balance, auxiliary, llm=self.llm
        )
        return DecisionOutcome(
            ticker=ticker,
            history=history,
            decision=decision,
            context=context,
            auxiliary=auxiliary or {},
        )
