from decimal import Decimal

import pytest

import caret.onchain.eth as eth


def test_w3_requires_rpc_url(monkeypatch):
    monkeypatch.setattr(eth.settings, "rpc_url", None)
    eth._w3 = None
    with pytest.raises(RuntimeError, match="RPC_URL"):
        eth.w3()


def test_w3_is_cached(monkeypatch):
    monkeypatch.setattr(eth.settings, "rpc_url", "http://dummy")
    eth._w3 = None

    class DummyProvider:
        def __init__(self, url, *a, **kw):
            self.url = url
            self.kwargs = kw

    class DummyWeb3:
        def __init__(self, provider):
            self.provider = provider

    monkeypatch.setattr(eth, "AsyncHTTPProvider", DummyProvider)
    monkeypatch.setattr(eth, "AsyncWeb3", DummyWeb3)

    client = eth.w3()
    assert client.provider.url == "http://dummy"
    assert client.provider.kwargs["request_kwargs"]["timeout"] == eth.settings.rpc_timeout_sec
    assert eth.w3() is client
    eth._w3 = None


def test_base_unit_conversion():
    assert eth.to_base_units(30, 6) == 30_000_000
    assert eth.to_base_units(6.0, 18) == 6 * 10**18
    assert eth.to_base_units(0.1, 18) == 10**17
    # extra precision is truncated
    assert eth.to_base_units(1.2345678, 6) == 1_234_567
    assert eth.from_base_units(70_000_000, 6) == Decimal(70)


class _Call:
    def __init__(self, value):
        self.value = value

    async def call(self):
        return self.value


class _Functions:
    def decimals(self):
        return _Call(6)

    def balanceOf(self, owner):
        return _Call(12_500_000)


class _Eth:
    def contract(self, address, abi):
        from types import SimpleNamespace

        return SimpleNamespace(functions=_Functions())


class _Web3:
    eth = _Eth()


@pytest.mark.asyncio
async def test_gateway_balance_scales_by_decimals():
    gw = eth.ChainGateway(web3=_Web3(), chain_id=31337)
    value = await gw.balance("0x" + "11" * 20, "0x" + "22" * 20)
    assert value == Decimal("12.5")
    # decimals are read once per asset
    assert gw._decimals == {"0x" + "11" * 20: 6}
