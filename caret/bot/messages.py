from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from caret.errors import (
    CaretError,
    InsufficientFunds,
    PriceHistoryError,
    PromptRejected,
    TransactionFailed,
)
from caret.exec.coordinator import AgentBalances
from caret.types import AdviceResult, Agent, TradeProposal

Button = Tuple[str, str]  # (label, callback data)


@dataclass
class Reply:
    text: str
    buttons: List[List[Button]] = field(default_factory=list)


RULE = "━━━━━━━━━━━━━━━━━━━━"

WELCOME = (
    "👋 **Welcome to Caret!**\n\n"
    "Create trading agents with custom strategies, ask them for trade ideas, "
    "and execute accepted trades on chain from your agent's escrow.\n\n"
    "By continuing you accept the terms of service."
)

TERMS_REQUIRED = "Please send /start and accept the terms first."


def error_text(err: Exception) -> str:
    """User-facing text for any failure reaching the chat."""
    if isinstance(err, InsufficientFunds):
        return "❌ **Insufficient funds**\n\n" + err.user_message
    if isinstance(err, PromptRejected):
        return f"🚫 **Request rejected:** {err.reason}"
    if isinstance(err, PriceHistoryError):
        return f"❌ **Price data unavailable:** {err}"
    if isinstance(err, TransactionFailed):
        text = f"❌ **Transaction failed at {err.step}:** {err.reason}"
        if err.tx_hash:
            text += f"\nTx: `{err.tx_hash}`"
        return text
    if isinstance(err, CaretError):
        return f"❌ {err.user_message}"
    return "❌ Something went wrong. Please try again."


def agent_summary(agent: Agent, actor: Optional[str] = None) -> str:
    text = (
        f"🤖 **{agent.name}**\n\n"
        f"**Strategy:** {agent.instructions}\n\n"
        f"**Escrow:** `{agent.escrow_address}`"
    )
    if actor:
        text += f"\n**Gas wallet:** `{actor}`"
    return text


def balance_text(name: str, b: AgentBalances, native_symbol: str) -> str:
    lines = [
        f"💼 **{name} balances**",
        "",
        f"• **USDT (escrow):** {b.funding:.2f}",
    ]
    for symbol, amount in sorted(b.tokens.items()):
        lines.append(f"• **{symbol} (escrow):** {amount:.6f}")
    lines.append(f"• **{native_symbol} (gas wallet):** {b.gas:.6f}")
    return "\n".join(lines)


def funding_text(name: str, escrow: str, actor: str, native_symbol: str, min_gas: Decimal) -> str:
    return (
        f"💸 **Fund {name}**\n\n"
        f"1. Send USDT (or tokens you want to sell) to the escrow:\n`{escrow}`\n\n"
        f"2. Send at least {min_gas:g} {native_symbol} for gas fees to the gas wallet:\n`{actor}`\n\n"
        "Both are needed before a trade can execute."
    )


def token_list_text(symbols: List[Tuple[str, str, bool]]) -> str:
    """``symbols`` holds (symbol, name, tradable on chain) triples."""
    lines = ["📋 **Supported tokens**", ""]
    for symbol, name, tradable in symbols:
        mark = "✅" if tradable else "⏳"
        lines.append(f"{mark} **{symbol}** ({name})")
    lines.append("")
    lines.append("⏳ = price data only, not yet tradable")
    return "\n".join(lines)


def proposal_text(p: TradeProposal, header: str = "🎯 **Recommended Trade:**") -> str:
    lines = [header, f"• **Token:** {p.token_symbol}", f"• **Side:** {p.trade_type.upper()}"]
    for label, value in (
        ("Entry Price", p.entry_price),
        ("Current Price", p.current_price),
        ("Stop Loss", p.stop_loss),
        ("Take Profit", p.take_profit),
    ):
        if value is not None:
            lines.append(f"• **{label}:** ${value:.4f}")
    lines.append(f"• **Confidence:** {p.confidence:g}%")
    lines.append("")
    lines.append(f"📊 **Analysis:**\n{p.reasoning}")
    lines.append("")
    lines.append(RULE)
    action = "sell" if p.trade_type == "sell" else "purchase"
    lines.append(f"💰 **TRADE AMOUNT: {p.funding_cost:.2f} USDT**")
    lines.append(f"📦 *Will {action} approximately {p.token_amount:.6f} {p.token_symbol}*")
    lines.append(RULE)
    return "\n".join(lines)


def proposal_buttons(p: TradeProposal) -> List[List[Button]]:
    row = [("✅ Accept Trade", f"confirm:{p.id}")]
    if not p.edited:
        row.append(("💰 Custom Amount", f"custom:{p.id}"))
    return [row, [("❌ Decline", f"decline:{p.id}"), ("🔙 Back to Agent", f"agent:{p.agent_id}")]]


def confirmation_text(p: TradeProposal, token_units: int, funding_units: int) -> str:
    return (
        "🔔 **FINAL CONFIRMATION**\n\n"
        f"• **Action:** {p.trade_type.upper()} {p.token_amount:.6f} {p.token_symbol}\n"
        f"• **USDT {'Cost' if p.trade_type == 'buy' else 'Revenue'}:** {p.funding_cost:.2f} USDT\n\n"
        "**Contract parameters:**\n"
        f"• Token amount (units): `{token_units}`\n"
        f"• USDT amount (units): `{funding_units}`\n\n"
        "🚀 **Ready to execute?**"
    )


def confirmation_buttons(p: TradeProposal) -> List[List[Button]]:
    return [[("🚀 Execute", f"accept:{p.id}"), ("❌ Cancel", f"decline:{p.id}")]]


def executed_text(p: TradeProposal, tx_hash: str) -> str:
    return (
        "✅ **Trade Executed Successfully!**\n\n"
        f"• {p.trade_type.upper()} {p.token_amount:.6f} {p.token_symbol}\n"
        f"• {p.funding_cost:.2f} USDT\n\n"
        f"Tx: `{tx_hash}`"
    )


def advice_text(advice: AdviceResult) -> str:
    text = f"💡 **Market Insight**\n\n{advice.reasoning}"
    if advice.suggested_token:
        text += f"\n\nToken worth a closer look: **{advice.suggested_token}**"
    return text
