import pytest

from caret.errors import (
    FUNDING_ASSET,
    GAS_ASSET,
    AgentNotFound,
    InsufficientFunds,
    TokenNotConfigured,
    TransactionFailed,
)
from caret.exec.coordinator import ExecutionCoordinator
from caret.onchain.identity import derive_actor
from caret.store.agents import AgentRegistry
from conftest import DEFINITIONS, DUCK, USDT, FakeChain, escrow_for

GAS = 10**15


async def setup(db, user_id, chain, escrow_usdt=100, gas=GAS):
    agents = AgentRegistry(db, escrow_for)
    agent = await agents.create(user_id, "alpha", "Buy dips on DUCK")
    actor = derive_actor(f"{user_id}_alpha")
    chain.fund(USDT, agent.escrow_address, escrow_usdt * 10**6)
    chain.native[actor.address] = gas
    coord = ExecutionCoordinator(agents, chain, DEFINITIONS, min_gas_wei=GAS, native_symbol="TON")
    return coord, agent, actor


@pytest.mark.asyncio
async def test_buy_executes_and_reduces_escrow(db, user_id, chain):
    coord, agent, actor = await setup(db, user_id, chain)
    token_units, cost_units = await coord.base_units("DUCK", 30 / 5.0, 30)
    assert token_units == 6 * 10**18
    assert cost_units == 30 * 10**6

    res = await coord.execute(agent.id, user_id, "DUCK", token_units, cost_units, "buy")
    assert res.success is True
    assert res.tx_hash.startswith("0x")
    assert chain.sent == ["fundActor", "approve", "buy"]
    assert await chain.balance_of(USDT, agent.escrow_address) == 70 * 10**6
    assert await chain.balance_of(DUCK, actor.address) == 6 * 10**18


@pytest.mark.asyncio
async def test_no_gas_sends_nothing(db, user_id, chain):
    coord, agent, actor = await setup(db, user_id, chain, gas=0)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.success is False
    assert isinstance(res.error, InsufficientFunds)
    assert res.error.kinds == [GAS_ASSET]
    assert res.error.shortfalls[0].asset == "TON"
    assert res.error.shortfalls[0].address == actor.address
    assert chain.sent == []


@pytest.mark.asyncio
async def test_both_shortfalls_reported(db, user_id, chain):
    coord, agent, _ = await setup(db, user_id, chain, escrow_usdt=10, gas=0)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.error.kinds == [FUNDING_ASSET, GAS_ASSET]
    funding = res.error.shortfalls[0]
    assert (funding.asset, funding.required, funding.available) == ("USDT", 30.0, 10.0)
    assert funding.address == agent.escrow_address
    assert "Send USDT to " + agent.escrow_address in res.error.user_message
    assert chain.sent == []


@pytest.mark.asyncio
async def test_sell_checks_token_balance(db, user_id, chain):
    coord, agent, actor = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "DUCK", 2 * 10**18, 10 * 10**6, "sell")
    assert res.error.kinds == [FUNDING_ASSET]
    assert res.error.shortfalls[0].asset == "DUCK"

    chain.fund(DUCK, agent.escrow_address, 5 * 10**18)
    res = await coord.execute(agent.id, user_id, "DUCK", 2 * 10**18, 10 * 10**6, "sell")
    assert res.success is True
    assert chain.sent == ["fundActor", "approve", "sell"]
    assert await chain.balance_of(DUCK, agent.escrow_address) == 3 * 10**18


@pytest.mark.asyncio
async def test_existing_allowance_skips_approve(db, user_id, chain):
    coord, agent, actor = await setup(db, user_id, chain)
    chain.allowances[(USDT, actor.address, DUCK)] = 10**30
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.success is True
    assert chain.sent == ["fundActor", "buy"]


@pytest.mark.asyncio
async def test_failed_step_is_named_and_not_rolled_back(db, user_id):
    chain = FakeChain(fail_step="buy")
    coord, agent, _ = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.success is False
    assert isinstance(res.error, TransactionFailed)
    assert res.error.step == "buy"
    # funds already moved to the actor stay there
    assert chain.sent == ["fundActor", "approve"]
    assert await chain.balance_of(USDT, agent.escrow_address) == 70 * 10**6


@pytest.mark.asyncio
async def test_unknown_token_and_agent(db, user_id, chain):
    coord, agent, _ = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "PEPE", 1, 1, "buy")
    assert isinstance(res.error, TokenNotConfigured)
    res = await coord.execute(agent.id + 100, user_id, "DUCK", 1, 1, "buy")
    assert isinstance(res.error, AgentNotFound)
    assert chain.sent == []


@pytest.mark.asyncio
async def test_available_balance_by_side(db, user_id, chain):
    coord, agent, _ = await setup(db, user_id, chain)
    chain.fund(DUCK, agent.escrow_address, 3 * 10**18)
    assert await coord.available_balance(agent.id, user_id, "buy", "DUCK") == 100.0
    assert await coord.available_balance(agent.id, user_id, "sell", "DUCK") == 3.0


class FlakyReadChain(FakeChain):
    """Reads start failing once the given step has been sent."""

    def __init__(self, fail_after=None, fail_allowance=False):
        super().__init__()
        self.fail_after = fail_after
        self.fail_allowance = fail_allowance

    async def balance_of(self, asset, owner):
        if self.fail_after is None or self.fail_after in self.sent:
            raise ConnectionError("rpc read timed out")
        return await super().balance_of(asset, owner)

    async def allowance(self, asset, owner, spender):
        if self.fail_allowance:
            raise ConnectionError("rpc read timed out")
        return await super().allowance(asset, owner, spender)


@pytest.mark.asyncio
async def test_rpc_error_in_precondition_reads_is_reported(db, user_id):
    chain = FlakyReadChain()
    coord, agent, _ = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.success is False
    assert isinstance(res.error, TransactionFailed)
    assert res.error.step == "preconditions"
    assert chain.sent == []


@pytest.mark.asyncio
async def test_rpc_error_in_allowance_read_is_reported(db, user_id):
    chain = FlakyReadChain(fail_after="never", fail_allowance=True)
    coord, agent, _ = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert isinstance(res.error, TransactionFailed)
    assert res.error.step == "allowance"
    assert chain.sent == ["fundActor"]


@pytest.mark.asyncio
async def test_final_balance_read_failure_keeps_success(db, user_id):
    chain = FlakyReadChain(fail_after="buy")
    coord, agent, _ = await setup(db, user_id, chain)
    res = await coord.execute(agent.id, user_id, "DUCK", 6 * 10**18, 30 * 10**6, "buy")
    assert res.success is True
    assert res.tx_hash.startswith("0x")
    assert chain.sent == ["fundActor", "approve", "buy"]


@pytest.mark.asyncio
async def test_read_helpers_type_rpc_errors(db, user_id):
    chain = FlakyReadChain()
    coord, agent, _ = await setup(db, user_id, chain)
    with pytest.raises(TransactionFailed) as e:
        await coord.available_balance(agent.id, user_id, "buy", "DUCK")
    assert e.value.step == "balance"

    async def down(asset):
        raise ConnectionError("rpc down")

    chain.decimals = down
    with pytest.raises(TransactionFailed) as e:
        await coord.base_units("DUCK", 1.0, 5.0)
    assert e.value.step == "decimals"
