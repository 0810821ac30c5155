import json
from types import SimpleNamespace

import pytest
import pytest_asyncio

from caret.errors import TransactionFailed
from caret.onchain.identity import derive_escrow_address
from caret.store.db import Database
from caret.types import PriceHistory, PricePoint

USDT = "0x" + "11" * 20
DUCK = "0x" + "22" * 20
FACTORY = "0x" + "33" * 20
INIT_HASH = "0x" + "44" * 32

DEFINITIONS = {"USDT": {"address": USDT}, "tokens": {"DUCK": {"address": DUCK}}}


def escrow_for(user_id, name):
    return derive_escrow_address(user_id, name, FACTORY, INIT_HASH)


def history(symbol, prices):
    return PriceHistory(
        symbol=symbol,
        days=7,
        points=[PricePoint(timestamp=1_700_000_000_000 + i, price=p) for i, p in enumerate(prices)],
    )


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeLLM:
    """Stands in for AsyncOpenAI; answers by result kind (json_schema name)."""

    def __init__(self, answers=None):
        self.answers = dict(answers or {})
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        rf = kwargs.get("response_format")
        kind = rf["json_schema"]["name"] if rf else "text"
        self.calls.append((kind, kwargs))
        answer = self.answers[kind]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        if not isinstance(answer, str):
            answer = json.dumps(answer)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=answer))])

    def kinds(self):
        return [k for k, _ in self.calls]


class FakeChain:
    """In-memory ledger with the ChainGateway surface."""

    def __init__(self, decimals=None, fail_step=None):
        self._decimals = {USDT: 6, DUCK: 18}
        self._decimals.update(decimals or {})
        self.balances = {}
        self.native = {}
        self.allowances = {}
        self.sent = []
        self.fail_step = fail_step

    def fund(self, asset, owner, units):
        self.balances[(asset, owner)] = self.balances.get((asset, owner), 0) + units

    async def decimals(self, asset):
        return self._decimals[asset]

    async def balance_of(self, asset, owner):
        return self.balances.get((asset, owner), 0)

    async def native_balance(self, address):
        return self.native.get(address, 0)

    async def allowance(self, asset, owner, spender):
        return self.allowances.get((asset, owner, spender), 0)

    async def balance(self, asset, owner):
        from caret.onchain.eth import from_base_units

        return from_base_units(await self.balance_of(asset, owner), self._decimals[asset])

    def _tx(self, step):
        if step == self.fail_step:
            raise TransactionFailed(step, "execution reverted", "0xdead")
        self.sent.append(step)
        return "0x" + f"{len(self.sent):064x}"

    async def fund_actor(self, account, escrow, asset, amount):
        tx = self._tx("fundActor")
        self.fund(asset, escrow, -amount)
        self.fund(asset, account.address, amount)
        return tx

    async def approve(self, account, asset, spender, amount):
        tx = self._tx("approve")
        self.allowances[(asset, account.address, spender)] = amount
        return tx

    async def trade(self, account, token, trade_type, token_amount, funding_amount):
        tx = self._tx(trade_type)
        if trade_type == "buy":
            self.fund(USDT, account.address, -funding_amount)
            self.fund(token, account.address, token_amount)
        else:
            self.fund(token, account.address, -token_amount)
            self.fund(USDT, account.address, funding_amount)
        return tx


@pytest.fixture
def db():
    d = Database(":memory:")
    d.migrate()
    yield d
    d.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def chain():
    return FakeChain()


@pytest_asyncio.fixture
async def user_id(db):
    from caret.store.agents import UserRegistry

    return await UserRegistry(db).register(555)
