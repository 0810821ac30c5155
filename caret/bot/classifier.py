import re
from dataclasses import dataclass, field
from typing import Any, Dict

from caret.config import tokens as catalog

AGENT_SETUP = "agent_setup"
TRADE_EXECUTION = "trade_execution"
TRADE_RECOMMENDATION = "trade_recommendation"
CHAT = "chat"

AGENT_SETUP_KEYWORDS = ("create agent", "new agent", "add agent", "setup agent", "make agent")
EXECUTION_KEYWORDS = ("buy", "sell", "execute", "trade", "purchase", "swap")
AMOUNT_KEYWORDS = ("$", "usdt", "dollar", "worth")
RECOMMENDATION_KEYWORDS = (
    "recommend",
    "suggestion",
    "advice",
    "what should i",
    "trade idea",
    "analysis",
    "prediction",
    "forecast",
    "outlook",
    "should i buy",
    "should i sell",
    "good trade",
    "trading opportunity",
)

_AMOUNT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:\$|usdt|dollar)")


@dataclass
class Classification:
    kind: str
    confidence: float
    extracted: Dict[str, Any] = field(default_factory=dict)


def classify(message: str) -> Classification:
    """Keyword routing of free text; no completion calls."""
    text = message.lower().strip()

    if any(k in text for k in AGENT_SETUP_KEYWORDS):
        return Classification(AGENT_SETUP, 0.9)

    mentioned = next(
        (s for s in catalog.symbols() if re.search(rf"\b{re.escape(s.lower())}\b", text)), None
    )
    action = next((k for k in EXECUTION_KEYWORDS if k in text), None)
    if action and (mentioned or any(k in text for k in AMOUNT_KEYWORDS)):
        m = _AMOUNT_RE.search(text)
        return Classification(
            TRADE_EXECUTION,
            0.8,
            {"token": mentioned, "action": action, "amount": float(m.group(1)) if m else None},
        )

    if any(k in text for k in RECOMMENDATION_KEYWORDS):
        return Classification(TRADE_RECOMMENDATION, 0.7)

    return Classification(CHAT, 0.6)
