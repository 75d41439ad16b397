from __future__ import annotations

import os
import random
import secrets
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse


VERSION = os.getenv("VERSION", "dev")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

app = FastAPI(title=f"Example Service {VERSION}")

STATE = {"counter": 0, "sessions": {}}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/")
def index(request: Request, response: Response) -> dict:
    sid = request.cookies.get("sid") or secrets.token_hex(8)
    session = STATE["sessions"].setdefault(sid, {"views": 0, "first_visit": _now()})
    session["views"] += 1
    session["last_visit"] = _now()
    STATE["counter"] += 1
    response.set_cookie("sid", sid, httponly=True)
    return {
        "message": "Hello from the example service",
        "version": VERSION,
        "total_visits": STATE["counter"],
        "session": {"id": sid, **session},
    }


@app.get("/health")
def health():
    # Optional fault injection to demo circuit-breaker rollbacks.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
        return JSONResponse({"status": "unhealthy"}, status_code=503)
    return {
        "status": "healthy",
        "db": "configured" if os.getenv("DB_HOST") else "not configured",
        "cache": "configured" if os.getenv("VALKEY_HOST") else "not configured",
    }


@app.get("/version")
def version() -> dict[str, str]:
    return {"version": VERSION}
