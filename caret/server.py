import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from caret.config import settings

app = FastAPI(title="Caret")

STARTED_AT = time.time()


@app.get("/health")
async def health():
    now = time.time()
    return JSONResponse(
        {
            "status": "ok",
            "network": settings.network,
            "timestamp": now,
            "uptime": now - STARTED_AT,
        }
    )


@app.get("/api/ping")
async def ping():
    return JSONResponse({"ok": True, "message": "pong"})
