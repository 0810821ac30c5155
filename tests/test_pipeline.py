import json

import pytest

from caret.errors import PriceFetchFailed, PromptRejected, UnknownSymbol, ValidationError
from caret.llm import decision as decision_mod
from caret.llm.pipeline import AdviceOutcome, DecisionOutcome, TradePipeline, build_agent_prompt
from caret.types import ContextResult
from conftest import FakeLLM, history

DECISION = {
    "token": "DUCK",
    "tradeType": "buy",
    "entry": 5.0,
    "currentPrice": 5.05,
    "stopLoss": 4.5,
    "takeProfit": 6.0,
    "message": "Breakout above resistance",
    "confidence": 72,
    "tradeAmount": 30,
}


class FakePrices:
    def __init__(self, fail=()):
        self.fail = set(fail)
        self.requests = []

    async def get(self, symbol, days=7):
        self.requests.append((symbol, days))
        if symbol in self.fail:
            raise PriceFetchFailed(symbol, "HTTP 500")
        if symbol not in ("DUCK", "TON"):
            raise UnknownSymbol(symbol)
        return history(symbol, [1.0, 1.1, 1.2])

    def market_summary(self):
        return {"totalTokens": 2, "cachedTokens": 0, "summary": []}

    def cached(self):
        return {}


def _user_content(llm, kind):
    for k, kwargs in llm.calls:
        if k == kind:
            return kwargs["messages"][1]["content"]
    raise AssertionError(f"no {kind} call")


@pytest.mark.asyncio
async def test_rejected_prompt_stops_before_any_other_stage():
    llm = FakeLLM({"guard": {"valid": False, "reason": "Stocks are not supported"}})
    with pytest.raises(PromptRejected) as e:
        await TradePipeline(FakePrices(), llm=llm).run("buy AAPL")
    assert e.value.reason == "Stocks are not supported"
    assert llm.kinds() == ["guard"]


@pytest.mark.asyncio
async def test_no_ticker_gives_generic_advice():
    llm = FakeLLM(
        {
            "guard": {"valid": True},
            "ticker": {"ticker": "", "found": False},
            "advice": {
                "suggestedToken": "TON",
                "reasoning": "TON is holding support",
                "needsSpecificTokenData": False,
            },
        }
    )
    prices = FakePrices()
    out = await TradePipeline(prices, llm=llm).run("what looks good today?")
    assert isinstance(out, AdviceOutcome)
    assert out.advice.suggested_token == "TON"
    assert prices.requests == []
    assert "decision" not in llm.kinds()


@pytest.mark.asyncio
async def test_simple_decision_uses_base_prompt():
    llm = FakeLLM(
        {
            "guard": {"valid": True},
            "ticker": {"ticker": "DUCK", "found": True},
            "context": {"needsMoreContext": False},
            "decision": DECISION,
        }
    )
    out = await TradePipeline(FakePrices(), llm=llm).run("buy duck", wallet_balance=100)
    assert isinstance(out, DecisionOutcome)
    assert out.decision.entry == 5.0
    assert out.auxiliary == {}
    assert llm.kinds() == ["guard", "ticker", "context", "decision"]
    assert "Additional Market Data" not in _user_content(llm, "decision")


@pytest.mark.asyncio
async def test_failed_auxiliary_fetch_is_skipped():
    llm = FakeLLM(
        {
            "guard": {"valid": True},
            "ticker": {"ticker": "DUCK", "found": True},
            "context": {
                "needsMoreContext": True,
                "requestedTokens": ["TON", "BTC"],
                "requestedDays": 30,
            },
            "decision": DECISION,
        }
    )
    prices = FakePrices()
    out = await TradePipeline(prices, llm=llm).run("buy duck vs ton")

    assert isinstance(out, DecisionOutcome)
    assert list(out.auxiliary) == ["TON"]
    # lookback clamped to 15 days
    assert ("TON", 15) in prices.requests
    content = _user_content(llm, "decision")
    extra = content.split("Additional Market Data:\n", 1)[1]
    assert '"TON"' in extra
    assert "BTC" not in extra


@pytest.mark.asyncio
async def test_primary_price_failure_aborts():
    llm = FakeLLM({"guard": {"valid": True}, "ticker": {"ticker": "DUCK", "found": True}})
    with pytest.raises(PriceFetchFailed):
        await TradePipeline(FakePrices(fail={"DUCK"}), llm=llm).run("buy duck")
    assert llm.kinds() == ["guard", "ticker"]


@pytest.mark.asyncio
async def test_malformed_decision_aborts():
    llm = FakeLLM(
        {
            "guard": {"valid": True},
            "ticker": {"ticker": "DUCK", "found": True},
            "context": {"needsMoreContext": False},
            "decision": {"token": "DUCK"},
        }
    )
    with pytest.raises(ValidationError):
        await TradePipeline(FakePrices(), llm=llm).run("buy duck")


@pytest.mark.asyncio
async def test_fetch_auxiliary_skips_primary_and_duplicates():
    prices = FakePrices()
    ctx = ContextResult(needs_more_context=True, requested_tokens=["duck", "ton", "TON"], requested_days=0)
    aux = await TradePipeline(prices).fetch_auxiliary(ctx, "DUCK")
    assert list(aux) == ["TON"]
    assert prices.requests == [("TON", 7)]


def test_sizing_instructions_state_bounds():
    text = decision_mod.sizing_instructions(200)
    assert "20.00 USDT (10%)" in text
    assert "180.00 USDT (90%)" in text
    assert "Unknown" in decision_mod.sizing_instructions(None)
    assert "not funded" in decision_mod.sizing_instructions(0)


def test_agent_prompt_lists_declines():
    declines = [
        json.dumps({"token_symbol": "DUCK", "trade_type": "buy", "reasoning": "momentum"}),
        "not json",
        json.dumps({"token_symbol": "TON", "trade_type": "sell", "reasoning": "overbought"}),
    ]
    prompt = build_agent_prompt("buy something cheap", "Swing trade majors", declines)
    assert 'TRADE REQUEST: "buy something cheap"' in prompt
    assert "Swing trade majors" in prompt
    assert "avoid suggestions similar to these" in prompt
    assert "1. DUCK buy - momentum" in prompt
    assert "2. TON sell - overbought" in prompt


def test_agent_prompt_without_declines():
    prompt = build_agent_prompt("buy duck", "Scalp")
    assert "declined" not in prompt
