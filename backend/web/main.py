"""
peersync node: HTTP entrypoint.

Run:
    uvicorn backend.web.main:app --host 0.0.0.0 --port 8100

Env:
    PEERSYNC_ENV            dev (default) | staging | prod; prod-like envs enforce
                            the startup guard in `backend.web.config`.
    PEERSYNC_ENABLE_DOTENV  load `.env` outside pytest (default true).
    PEERSYNC_LOG_LEVEL      root log level (default INFO).
    Sync settings (DATABASE_URL, SYNC_*) are read by `backend.fullsync.config`.
"""
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via PEERSYNC_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("PEERSYNC_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()

from backend.web import config as _cfg  # noqa: E402

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

from backend.web.routes.sync import sync_router  # noqa: E402

logging.basicConfig(
    level=(os.getenv("PEERSYNC_LOG_LEVEL", "INFO") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("peersync.web")

app = FastAPI(title="peersync", description="Peer-to-peer full database sync", version="0.1.0")


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    return response


app.include_router(sync_router)


@app.get("/health")
async def health_check():
    # Liveness only; no auth, no database round-trip.
    return JSONResponse({"status": "ok"}, headers={"Cache-Control": "private, no-store"})
