import httpx
import pytest

from caret import server


@pytest.mark.asyncio
async def test_health():
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["network"] == server.settings.network
    assert body["uptime"] >= 0


@pytest.mark.asyncio
async def test_ping():
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        resp = await ac.get("/api/ping")
    assert resp.json() == {"ok": True, "message": "pong"}
