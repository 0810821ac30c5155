import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from caret.config import settings
from caret.errors import (
    FUNDING_ASSET,
    GAS_ASSET,
    AgentNotFound,
    CaretError,
    InsufficientFunds,
    Shortfall,
    TokenNotConfigured,
    TransactionFailed,
)
from caret.onchain.eth import ChainGateway, from_base_units, to_base_units
from caret.onchain.identity import actor_seed, derive_actor
from caret.store.agents import AgentRegistry

logger = logging.getLogger("caret.exec")

NATIVE_DECIMALS = 18


@dataclass
class ExecutionResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[CaretError] = None


@dataclass
class AgentBalances:
    escrow: str
    actor: str
    funding: Decimal
    gas: Decimal
    tokens: Dict[str, Decimal] = field(default_factory=dict)


class ExecutionCoordinator:
    """Runs one accepted trade on chain for an agent's escrow/actor pair."""

    def __init__(
        self,
        agents: AgentRegistry,
        gateway: ChainGateway,
        definitions: Dict[str, Any],
        min_gas_wei: Optional[int] = None,
        native_symbol: Optional[str] = None,
    ):
        self.agents = agents
        self.gateway = gateway
        self.definitions = definitions
        self.min_gas_wei = settings.min_gas_wei if min_gas_wei is None else min_gas_wei
        self.native_symbol = native_symbol or settings.native_symbol or "ETH"

    def funding_asset(self) -> str:
        usdt = self.definitions.get("USDT") or {}
        if not usdt.get("address"):
            raise TokenNotConfigured("USDT")
        return usdt["address"]

    def token_address(self, symbol: str) -> str:
        entry = (self.definitions.get("tokens") or {}).get(symbol.upper()) or {}
        if not entry.get("address"):
            raise TokenNotConfigured(symbol)
        return entry["address"]

    async def base_units(
        self, token_symbol: str, token_amount: float, funding_cost: float
    ) -> Tuple[int, int]:
        """Contract-level amounts using each asset's on-chain decimals."""
        token, funding = self.token_address(token_symbol), self.funding_asset()
        try:
            token_decimals = await self.gateway.decimals(token)
            funding_decimals = await self.gateway.decimals(funding)
        except Exception as e:
            raise TransactionFailed("decimals", str(e)) from e
        return (
            to_base_units(token_amount, token_decimals),
            to_base_units(funding_cost, funding_decimals),
        )

    async def available_balance(
        self, agent_id: int, user_id: int, trade_type: str, token_symbol: str
    ) -> float:
        """Escrow balance of whatever a trade would spend: USDT to buy, the token to sell."""
        agent = await self.agents.get(agent_id, user_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        asset = self.funding_asset() if trade_type == "buy" else self.token_address(token_symbol)
        try:
            return float(await self.gateway.balance(asset, agent.escrow_address))
        except Exception as e:
            raise TransactionFailed("balance", str(e)) from e

    async def balances(self, agent_id: int, user_id: int) -> AgentBalances:
        """Escrow USDT and token holdings plus the actor's gas, for display."""
        agent = await self.agents.get(agent_id, user_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        actor = derive_actor(actor_seed(user_id, agent.name)).address
        try:
            funding = await self.gateway.balance(self.funding_asset(), agent.escrow_address)
            gas = from_base_units(await self.gateway.native_balance(actor), NATIVE_DECIMALS)
            held = {}
            for symbol, entry in (self.definitions.get("tokens") or {}).items():
                if not entry.get("address"):
                    continue
                amount = await self.gateway.balance(entry["address"], agent.escrow_address)
                if amount > 0:
                    held[symbol.upper()] = amount
        except CaretError:
            raise
        except Exception as e:
            raise TransactionFailed("balances", str(e)) from e
        return AgentBalances(agent.escrow_address, actor, funding, gas, held)

    async def _check_preconditions(
        self,
        escrow: str,
        actor: str,
        symbol: str,
        asset: str,
        required: int,
    ) -> List[Shortfall]:
        shortfalls: List[Shortfall] = []
        decimals = await self.gateway.decimals(asset)
        held = await self.gateway.balance_of(asset, escrow)
        logger.info(
            f"[exec] escrow {symbol} balance {from_base_units(held, decimals)}, "
            f"required {from_base_units(required, decimals)}"
        )
        if held < required:
            shortfalls.append(
                Shortfall(
                    kind=FUNDING_ASSET,
                    asset=symbol,
                    required=float(from_base_units(required, decimals)),
                    available=float(from_base_units(held, decimals)),
                    address=escrow,
                )
            )

        gas = await self.gateway.native_balance(actor)
        if gas < self.min_gas_wei:
            shortfalls.append(
                Shortfall(
                    kind=GAS_ASSET,
                    asset=self.native_symbol,
                    required=float(from_base_units(self.min_gas_wei, NATIVE_DECIMALS)),
                    available=float(from_base_units(gas, NATIVE_DECIMALS)),
                    address=actor,
                )
            )
        return shortfalls

    async def execute(
        self,
        agent_id: int,
        user_id: int,
        token_symbol: str,
        token_amount_units: int,
        funding_cost_units: int,
        trade_type: str = "buy",
    ) -> ExecutionResult:
        try:
            tx_hash = await self._execute(
                agent_id, user_id, token_symbol, token_amount_units, funding_cost_units, trade_type
            )
        except CaretError as e:
            logger.warning(f"[exec] trade for agent {agent_id} not executed: {e}")
            return ExecutionResult(success=False, error=e)
        return ExecutionResult(success=True, tx_hash=tx_hash)

    async def _execute(
        self,
        agent_id: int,
        user_id: int,
        token_symbol: str,
        token_amount_units: int,
        funding_cost_units: int,
        trade_type: str,
    ) -> str:
        agent = await self.agents.get(agent_id, user_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        token = self.token_address(token_symbol)
        funding = self.funding_asset()

        actor = derive_actor(actor_seed(user_id, agent.name))
        escrow = agent.escrow_address

        if trade_type == "buy":
            asset, asset_symbol, amount = funding, "USDT", funding_cost_units
        else:
            asset, asset_symbol, amount = token, token_symbol.upper(), token_amount_units

        try:
            shortfalls = await self._check_preconditions(
                escrow, actor.address, asset_symbol, asset, amount
            )
        except Exception as e:
            raise TransactionFailed("preconditions", str(e)) from e
        if shortfalls:
            raise InsufficientFunds(shortfalls)

        logger.info(f"[exec] funding actor {actor.address} with {amount} units of {asset_symbol}")
        await self.gateway.fund_actor(actor, escrow, asset, amount)

        try:
            allowance = await self.gateway.allowance(asset, actor.address, token)
        except Exception as e:
            raise TransactionFailed("allowance", str(e)) from e
        if allowance < amount:
            await self.gateway.approve(actor, asset, token, amount)

        tx_hash = await self.gateway.trade(
            actor, token, trade_type, token_amount_units, funding_cost_units
        )
        logger.info(f"[exec] {trade_type} {token_symbol} executed: {tx_hash}")

        try:
            final = await self.gateway.balance(asset, escrow)
        except Exception as e:
            logger.warning(f"[exec] could not read final escrow {asset_symbol} balance: {e}")
        else:
            logger.info(f"[exec] final escrow {asset_symbol} balance: {final}")
        return tx_hash
