import asyncio

import pytest

from caret.store.kv import InMemoryStore, SqliteStore
from caret.trade.sessions import AWAITING_AGENT_NAME, AWAITING_INSTRUCTIONS, SessionStore
from conftest import FakeClock


@pytest.fixture(params=["memory", "sqlite"])
def make_store(request, db):
    def _make(clock):
        if request.param == "memory":
            return InMemoryStore(clock)
        return SqliteStore(db, "test", clock)

    return _make


@pytest.mark.asyncio
async def test_get_respects_expiry(make_store):
    clock = FakeClock(100.0)
    store = make_store(clock)
    await store.set("a", {"x": 1}, expires_at=400.0)
    assert await store.get("a") == {"x": 1}
    clock.now = 399.9
    assert await store.get("a") == {"x": 1}
    clock.now = 400.0
    assert await store.get("a") is None
    assert await store.items() == []


@pytest.mark.asyncio
async def test_pop_consumes_once(make_store):
    store = make_store(FakeClock())
    await store.set("a", {"x": 1})
    assert await store.pop("a") == {"x": 1}
    assert await store.pop("a") is None
    assert await store.get("a") is None


@pytest.mark.asyncio
async def test_concurrent_pops_single_winner(make_store):
    store = make_store(FakeClock())
    await store.set("a", {"x": 1})
    results = await asyncio.gather(*(store.pop("a") for _ in range(5)))
    assert [r for r in results if r is not None] == [{"x": 1}]


@pytest.mark.asyncio
async def test_pop_of_expired_value_returns_none(make_store):
    clock = FakeClock(0.0)
    store = make_store(clock)
    await store.set("a", {"x": 1}, expires_at=10.0)
    clock.now = 11.0
    assert await store.pop("a") is None


@pytest.mark.asyncio
async def test_sweep_removes_only_expired(make_store):
    clock = FakeClock(0.0)
    store = make_store(clock)
    await store.set("old", {"v": 1}, expires_at=5.0)
    await store.set("new", {"v": 2}, expires_at=50.0)
    await store.set("forever", {"v": 3})
    clock.now = 10.0
    assert await store.sweep() == 1
    assert sorted(k for k, _ in await store.items()) == ["forever", "new"]


@pytest.mark.asyncio
async def test_sqlite_namespaces_are_isolated(db):
    a = SqliteStore(db, "a")
    b = SqliteStore(db, "b")
    await a.set("k", {"v": "a"})
    await b.set("k", {"v": "b"})
    assert (await a.get("k"))["v"] == "a"
    await a.delete("k")
    assert await b.get("k") == {"v": "b"}


@pytest.mark.asyncio
async def test_sessions_last_write_wins_and_expire():
    clock = FakeClock(0.0)
    sessions = SessionStore(InMemoryStore(clock), ttl_sec=300, clock=clock)
    await sessions.start(1, AWAITING_AGENT_NAME)
    await sessions.start(1, AWAITING_INSTRUCTIONS, name="alpha")
    s = await sessions.get(1)
    assert s["step"] == AWAITING_INSTRUCTIONS
    assert s["data"] == {"name": "alpha"}
    clock.now = 301.0
    assert await sessions.get(1) is None


@pytest.mark.asyncio
async def test_replace_only_when_fields_match(make_store):
    clock = FakeClock(0.0)
    store = make_store(clock)
    await store.set("p", {"state": "PROPOSED", "edited": False}, expires_at=50.0)
    assert await store.replace("p", {"state": "CONFIRMING"}, {"state": "AMOUNT_EDITING"}) is False
    assert (await store.get("p"))["state"] == "PROPOSED"
    assert await store.replace(
        "p", {"state": "AMOUNT_EDITING", "edited": True}, {"state": "PROPOSED", "edited": False}, 50.0
    )
    assert await store.get("p") == {"state": "AMOUNT_EDITING", "edited": True}


@pytest.mark.asyncio
async def test_replace_never_resurrects(make_store):
    clock = FakeClock(0.0)
    store = make_store(clock)
    await store.set("p", {"state": "PROPOSED"}, expires_at=50.0)
    await store.pop("p")
    assert await store.replace("p", {"state": "PROPOSED"}, {"state": "PROPOSED"}) is False
    assert await store.get("p") is None

    await store.set("q", {"state": "PROPOSED"}, expires_at=50.0)
    clock.now = 60.0
    assert await store.replace("q", {"state": "PROPOSED"}, {"state": "PROPOSED"}) is False
