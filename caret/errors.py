from dataclasses import dataclass
from typing import List


class CaretError(Exception):
    """Base for every failure surfaced to callers."""

    @property
    def user_message(self) -> str:
        return str(self) or "Something went wrong. Please try again."


# --- Completion service ---


class CompletionError(CaretError):
    pass


class ValidationError(CompletionError):
    """Completion output did not match the expected result shape."""

    def __init__(self, stage: str, detail: str):
        super().__init__(f"Validation failed for {stage}: {detail}")
        self.stage = stage
        self.detail = detail

    @property
    def user_message(self) -> str:
        return "The AI returned an unexpected answer. Please try again."


class QuotaExceeded(CompletionError):
    @property
    def user_message(self) -> str:
        return "The AI service is at capacity right now. Please try again shortly."


class ServiceUnavailable(CompletionError):
    @property
    def user_message(self) -> str:
        return "The AI service is temporarily unavailable. Please try again shortly."


# --- Pipeline ---


class PromptRejected(CaretError):
    def __init__(self, reason: str | None):
        super().__init__(reason or "Prompt validation failed")
        self.reason = reason or "Prompt validation failed"


class PriceHistoryError(CaretError):
    pass


class UnknownSymbol(PriceHistoryError):
    def __init__(self, symbol: str):
        super().__init__(f"No price feed configured for token: {symbol}")
        self.symbol = symbol


class PriceFetchFailed(PriceHistoryError):
    def __init__(self, symbol: str, reason: str):
        super().__init__(f"Failed to fetch price history for {symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


# --- Execution preconditions ---

FUNDING_ASSET = "funding-asset"
GAS_ASSET = "gas-asset"


@dataclass(frozen=True)
class Shortfall:
    kind: str  # funding-asset | gas-asset
    asset: str
    required: float
    available: float
    address: str


class InsufficientFunds(CaretError):
    def __init__(self, shortfalls: List[Shortfall]):
        self.shortfalls = list(shortfalls)
        super().__init__(
            "; ".join(
                f"Insufficient {s.asset}: has {s.available}, needs {s.required}"
                for s in self.shortfalls
            )
        )

    @property
    def kinds(self) -> List[str]:
        return [s.kind for s in self.shortfalls]

    @property
    def kind(self) -> str:
        return self.shortfalls[0].kind

    @property
    def user_message(self) -> str:
        lines = []
        for s in self.shortfalls:
            purpose = "for gas fees" if s.kind == GAS_ASSET else "in escrow"
            lines.append(
                f"Missing {s.asset} {purpose}: has {s.available:g}, needs {s.required:g}. "
                f"Send {s.asset} to {s.address}"
            )
        return "\n".join(lines)


class TokenNotConfigured(CaretError):
    def __init__(self, symbol: str):
        super().__init__(f"Token {symbol} not available for trading.")
        self.symbol = symbol


class AgentNotFound(CaretError):
    def __init__(self, agent_id: int):
        super().__init__("Agent not found or you don't have permission to access it.")
        self.agent_id = agent_id


class TransactionFailed(CaretError):
    def __init__(self, step: str, reason: str, tx_hash: str | None = None):
        super().__init__(f"Transaction failed at {step}: {reason}")
        self.step = step
        self.reason = reason
        self.tx_hash = tx_hash


# --- Lifecycle ---


class ProposalNotFoundOrExpired(CaretError):
    def __init__(self, proposal_id: str):
        super().__init__(
            "Trade data expired or not found. Please generate a new trade suggestion."
        )
        self.proposal_id = proposal_id


class InvalidTransition(CaretError):
    def __init__(self, event: str, state: str, message: str | None = None):
        super().__init__(message or f"Cannot {event.lower()} a trade that is {state.lower()}.")
        self.event = event
        self.state = state


class InvalidAmount(CaretError):
    NOT_NUMERIC = "not_numeric"
    NOT_POSITIVE = "not_positive"
    ABOVE_CEILING = "above_ceiling"
    ABOVE_BALANCE = "above_balance"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
