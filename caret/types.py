import time
from typing import ClassVar, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _alias(*names: str):
    return AliasChoices(*names)


# --- Completion result shapes ---


class GuardResult(BaseModel):
    kind: ClassVar[str] = "guard"

    valid: bool
    reason: Optional[str] = None


class TickerResult(BaseModel):
    kind: ClassVar[str] = "ticker"

    ticker: str
    found: bool

    @field_validator("ticker")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class ContextResult(BaseModel):
    kind: ClassVar[str] = "context"
    model_config = ConfigDict(populate_by_name=True)

    needs_more_context: bool = Field(
        validation_alias=_alias("needsMoreContext", "needs_more_context")
    )
    requested_tokens: Optional[List[str]] = Field(
        default=None, validation_alias=_alias("requestedTokens", "requested_tokens")
    )
    requested_days: Optional[int] = Field(
        default=None, validation_alias=_alias("requestedDays", "requested_days")
    )
    reason: Optional[str] = None


class DecisionResult(BaseModel):
    kind: ClassVar[str] = "decision"
    model_config = ConfigDict(populate_by_name=True)

    token: str
    trade_type: Literal["buy", "sell"] = Field(validation_alias=_alias("tradeType", "trade_type"))
    entry: float = Field(gt=0)
    current_price: float = Field(validation_alias=_alias("currentPrice", "current_price"))
    stop_loss: float = Field(validation_alias=_alias("stopLoss", "sl", "stop_loss"))
    take_profit: float = Field(validation_alias=_alias("takeProfit", "tp", "take_profit"))
    message: str
    confidence: float = Field(ge=0, le=100)
    trade_amount: Optional[float] = Field(
        default=None, validation_alias=_alias("tradeAmount", "trade_amount")
    )

    @field_validator("token")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class AdviceResult(BaseModel):
    kind: ClassVar[str] = "advice"
    model_config = ConfigDict(populate_by_name=True)

    suggested_token: Optional[str] = Field(
        default=None, validation_alias=_alias("suggestedToken", "suggested_token")
    )
    reasoning: str
    needs_specific_token_data: bool = Field(
        validation_alias=_alias("needsSpecificTokenData", "needs_specific_token_data")
    )
    requested_tokens: Optional[List[str]] = Field(
        default=None, validation_alias=_alias("requestedTokens", "requested_tokens")
    )


# --- Market data ---


class PricePoint(BaseModel):
    timestamp: float
    price: float
    volume: float = 0.0
    market_cap: float = 0.0


class PriceHistory(BaseModel):
    symbol: str
    days: int
    points: List[PricePoint]


# --- Records ---


class Agent(BaseModel):
    id: int
    owner_user_id: int
    name: str
    instructions: str
    escrow_address: str
    created_at: float


class TradeProposal(BaseModel):
    id: str
    agent_id: int
    owner_user_id: int
    token_symbol: str
    trade_type: Literal["buy", "sell"]
    token_amount: float
    funding_cost: float
    entry_price: Optional[float] = None
    current_price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    confidence: float
    reasoning: str
    state: str = "PROPOSED"
    edited: bool = False
    created_at: float = Field(default_factory=time.time)


class DeclinedTrade(BaseModel):
    owner_user_id: int
    agent_id: int
    proposal_snapshot: str
    declined_at: float
