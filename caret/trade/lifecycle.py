"""Trade proposal state machine.

A proposal lives in an expiring key-value store from ``propose`` until it is
accepted, declined, or expires. Every user action is an event looked up in
``_TRANSITIONS``; pairs that are not in the table raise ``InvalidTransition``.

ACCEPT consumes the proposal (pop) before anything touches the chain, so a
proposal id executes at most once even when the button is pressed twice.
"""

import logging
import math
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from caret.config import settings
from caret.errors import (
    CaretError,
    InvalidAmount,
    InvalidTransition,
    ProposalNotFoundOrExpired,
    TransactionFailed,
)
from caret.exec.coordinator import ExecutionCoordinator
from caret.llm.decision import MAX_SIZE_PCT, MIN_SIZE_PCT
from caret.store.declines import DeclineMemory
from caret.store.kv import KeyValueStore
from caret.trade.sessions import AWAITING_CUSTOM_AMOUNT, SessionStore
from caret.types import Agent, DecisionResult, TradeProposal

logger = logging.getLogger("caret.lifecycle")

# states
PROPOSED = "PROPOSED"
AMOUNT_EDITING = "AMOUNT_EDITING"
CONFIRMING = "CONFIRMING"
EXECUTING = "EXECUTING"
EXECUTED = "EXECUTED"
FAILED = "FAILED"
DECLINED = "DECLINED"
EXPIRED = "EXPIRED"

# events
EDIT = "EDIT"
SUBMIT_AMOUNT = "SUBMIT_AMOUNT"
CONFIRM = "CONFIRM"
ACCEPT = "ACCEPT"
DECLINE = "DECLINE"

_TRANSITIONS = {
    (EDIT, PROPOSED): AMOUNT_EDITING,
    (SUBMIT_AMOUNT, AMOUNT_EDITING): PROPOSED,
    (CONFIRM, PROPOSED): CONFIRMING,
    (ACCEPT, CONFIRMING): EXECUTING,
    (DECLINE, PROPOSED): DECLINED,
    (DECLINE, AMOUNT_EDITING): DECLINED,
    (DECLINE, CONFIRMING): DECLINED,
}

FALLBACK_COST = 50.0
FALLBACK_PCT = 0.30

REGENERATE = "regenerate"


def next_state(event: str, state: str) -> str:
    try:
        return _TRANSITIONS[(event, state)]
    except KeyError:
        raise InvalidTransition(event, state) from None


def size_funding_cost(trade_amount: Optional[float], balance: Optional[float]) -> float:
    """Funding cost for a new proposal.

    A missing ``trade_amount`` falls back to ``min(50, 30% of balance)``.
    With a known positive balance the result is kept within 10%..90% of it.
    An empty escrow keeps the suggestion; execution will report the shortfall.
    """
    if balance is None:
        return float(trade_amount) if trade_amount and trade_amount > 0 else FALLBACK_COST
    if balance <= 0:
        logger.warning("[lifecycle] escrow is empty; proposal needs funding before it can execute")
        return float(trade_amount) if trade_amount and trade_amount > 0 else FALLBACK_COST
    if not trade_amount or trade_amount <= 0:
        return min(FALLBACK_COST, FALLBACK_PCT * balance)
    lo, hi = MIN_SIZE_PCT * balance, MAX_SIZE_PCT * balance
    if trade_amount < lo or trade_amount > hi:
        clamped = min(max(trade_amount, lo), hi)
        logger.warning(
            f"[lifecycle] suggested amount {trade_amount} outside {lo:.2f}..{hi:.2f}, using {clamped:.2f}"
        )
        return clamped
    return float(trade_amount)


def parse_amount(text: str, ceiling: float) -> float:
    try:
        amount = float(str(text).strip())
    except ValueError:
        raise InvalidAmount(
            InvalidAmount.NOT_NUMERIC, "Please enter a valid number (e.g. 25 or 12.5)."
        ) from None
    if not math.isfinite(amount):
        raise InvalidAmount(InvalidAmount.NOT_NUMERIC, "Please enter a valid number (e.g. 25 or 12.5).")
    if amount <= 0:
        raise InvalidAmount(InvalidAmount.NOT_POSITIVE, "Amount must be greater than 0.")
    if amount > ceiling:
        raise InvalidAmount(
            InvalidAmount.ABOVE_CEILING, f"Maximum amount is {ceiling:g} USDT per trade."
        )
    return amount


@dataclass
class Confirmation:
    proposal: TradeProposal
    token_units: int
    funding_units: int


@dataclass
class TradeOutcome:
    proposal: TradeProposal
    state: str
    tx_hash: Optional[str] = None
    error: Optional[CaretError] = None
    actions: List[str] = field(default_factory=list)


class TradeLifecycle:
    def __init__(
        self,
        proposals: KeyValueStore,
        declines: DeclineMemory,
        coordinator: ExecutionCoordinator,
        sessions: Optional[SessionStore] = None,
        ttl_sec: Optional[float] = None,
        max_custom_amount: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.proposals = proposals
        self.declines = declines
        self.coordinator = coordinator
        self.sessions = sessions
        self.ttl_sec = settings.proposal_ttl_sec if ttl_sec is None else ttl_sec
        self.max_custom_amount = max_custom_amount or settings.max_custom_amount
        self.clock = clock

    # --- storage ---

    @staticmethod
    def _key(proposal_id: str) -> str:
        return f"proposal:{proposal_id}"

    def _expires_at(self, proposal: TradeProposal) -> float:
        return proposal.created_at + self.ttl_sec

    async def _save(self, proposal: TradeProposal) -> None:
        await self.proposals.set(
            self._key(proposal.id), proposal.model_dump(), expires_at=self._expires_at(proposal)
        )

    async def _advance(self, proposal: TradeProposal, expected_state: str, **match) -> None:
        """Write back a transition unless the stored copy moved on meanwhile."""
        written = await self.proposals.replace(
            self._key(proposal.id),
            proposal.model_dump(),
            {"state": expected_state, **match},
            expires_at=self._expires_at(proposal),
        )
        if not written:
            raise ProposalNotFoundOrExpired(proposal.id)

    async def get(self, proposal_id: str, owner_user_id: int) -> TradeProposal:
        value = await self.proposals.get(self._key(proposal_id))
        if value is None:
            raise ProposalNotFoundOrExpired(proposal_id)
        proposal = TradeProposal.model_validate(value)
        if proposal.owner_user_id != owner_user_id:
            raise ProposalNotFoundOrExpired(proposal_id)
        return proposal

    async def _consume(self, proposal_id: str, owner_user_id: int, event: str) -> TradeProposal:
        current = await self.get(proposal_id, owner_user_id)
        next_state(event, current.state)
        value = await self.proposals.pop(self._key(proposal_id))
        if value is None:
            raise ProposalNotFoundOrExpired(proposal_id)
        popped = TradeProposal.model_validate(value)
        if (event, popped.state) not in _TRANSITIONS:
            # changed between read and pop; put it back untouched
            await self._save(popped)
            raise InvalidTransition(event, popped.state)
        return popped

    # --- events ---

    async def propose(
        self,
        decision: DecisionResult,
        agent: Agent,
        balance: Optional[float] = None,
    ) -> TradeProposal:
        cost = size_funding_cost(decision.trade_amount, balance)
        proposal = TradeProposal(
            id=secrets.token_hex(8),
            agent_id=agent.id,
            owner_user_id=agent.owner_user_id,
            token_symbol=decision.token,
            trade_type=decision.trade_type,
            token_amount=cost / decision.entry,
            funding_cost=cost,
            entry_price=decision.entry,
            current_price=decision.current_price,
            stop_loss=decision.stop_loss,
            take_profit=decision.take_profit,
            confidence=decision.confidence,
            reasoning=decision.message,
            state=PROPOSED,
            created_at=self.clock(),
        )
        await self._save(proposal)
        logger.info(
            f"[lifecycle] proposed {proposal.id}: {proposal.trade_type} "
            f"{proposal.token_amount:.6f} {proposal.token_symbol} for {cost:.2f}"
        )
        return proposal

    async def edit(self, proposal_id: str, owner_user_id: int) -> TradeProposal:
        proposal = await self.get(proposal_id, owner_user_id)
        if proposal.edited:
            raise InvalidTransition(
                EDIT, proposal.state, "The amount of this trade was already changed once."
            )
        source = proposal.state
        proposal.state = next_state(EDIT, source)
        proposal.edited = True
        await self._advance(proposal, source, edited=False)
        if self.sessions is not None:
            await self.sessions.start(
                owner_user_id, AWAITING_CUSTOM_AMOUNT, proposal_id=proposal_id
            )
        return proposal

    async def submit_amount(self, proposal_id: str, owner_user_id: int, text: str) -> TradeProposal:
        proposal = await self.get(proposal_id, owner_user_id)
        target = next_state(SUBMIT_AMOUNT, proposal.state)
        amount = parse_amount(text, self.max_custom_amount)

        entry = proposal.entry_price
        if not entry:
            entry = proposal.funding_cost / proposal.token_amount
        token_amount = amount / entry

        available = await self.coordinator.available_balance(
            proposal.agent_id, owner_user_id, proposal.trade_type, proposal.token_symbol
        )
        needed = amount if proposal.trade_type == "buy" else token_amount
        if needed > available:
            asset = "USDT" if proposal.trade_type == "buy" else proposal.token_symbol
            raise InvalidAmount(
                InvalidAmount.ABOVE_BALANCE,
                f"Insufficient balance: you entered {needed:g} {asset} "
                f"but the escrow holds {available:g} {asset}.",
            )

        proposal.funding_cost = amount
        proposal.token_amount = token_amount
        proposal.entry_price = entry
        proposal.state = target
        await self._advance(proposal, AMOUNT_EDITING)
        if self.sessions is not None:
            await self.sessions.clear(owner_user_id)
        logger.info(f"[lifecycle] {proposal_id} amount set to {amount}")
        return proposal

    async def confirm(self, proposal_id: str, owner_user_id: int) -> Confirmation:
        proposal = await self.get(proposal_id, owner_user_id)
        source = proposal.state
        proposal.state = next_state(CONFIRM, source)
        token_units, funding_units = await self.coordinator.base_units(
            proposal.token_symbol, proposal.token_amount, proposal.funding_cost
        )
        await self._advance(proposal, source, funding_cost=proposal.funding_cost)
        return Confirmation(proposal, token_units, funding_units)

    async def accept(self, proposal_id: str, owner_user_id: int) -> TradeOutcome:
        proposal = await self._consume(proposal_id, owner_user_id, ACCEPT)
        proposal.state = EXECUTING
        logger.info(f"[lifecycle] executing {proposal_id}")

        try:
            token_units, funding_units = await self.coordinator.base_units(
                proposal.token_symbol, proposal.token_amount, proposal.funding_cost
            )
        except Exception as e:
            error = e if isinstance(e, CaretError) else TransactionFailed("decimals", str(e))
            logger.warning(f"[lifecycle] {proposal_id} not executed: {error}")
            proposal.state = FAILED
            return TradeOutcome(proposal, FAILED, error=error, actions=[REGENERATE])
        result = await self.coordinator.execute(
            proposal.agent_id,
            owner_user_id,
            proposal.token_symbol,
            token_units,
            funding_units,
            proposal.trade_type,
        )
        if result.success:
            proposal.state = EXECUTED
            return TradeOutcome(proposal, EXECUTED, tx_hash=result.tx_hash)
        proposal.state = FAILED
        return TradeOutcome(proposal, FAILED, error=result.error, actions=[REGENERATE])

    async def decline(self, proposal_id: str, owner_user_id: int) -> TradeProposal:
        proposal = await self._consume(proposal_id, owner_user_id, DECLINE)
        proposal.state = DECLINED
        snapshot = proposal.model_dump_json(
            include={"token_symbol", "trade_type", "token_amount", "funding_cost", "entry_price", "reasoning"}
        )
        await self.declines.record(owner_user_id, proposal.agent_id, snapshot)
        if self.sessions is not None:
            await self.sessions.clear(owner_user_id)
        logger.info(f"[lifecycle] {proposal_id} declined")
        return proposal

    # --- housekeeping ---

    async def purge_agent(self, owner_user_id: int, agent_id: int) -> int:
        removed = 0
        for key, value in await self.proposals.items():
            if value.get("owner_user_id") == owner_user_id and value.get("agent_id") == agent_id:
                removed += await self.proposals.delete(key)
        return removed

    async def sweep(self) -> int:
        removed = await self.proposals.sweep()
        if self.sessions is not None:
            removed += await self.sessions.sweep()
        if removed:
            logger.info(f"[lifecycle] swept {removed} expired records")
        return removed
