# ================================
# server.py  (credits gateway app)
# ================================

import os
import time
import threading
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# load .env before importing modules that read os.getenv at import time
load_dotenv()

import billing  # noqa: E402
from billing import router as billing_router  # noqa: E402

logging.basicConfig(level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
log = logging.getLogger("credits-gateway")

AUDITED_PATHS = (
    "/credits",
    "/billing/credits",
    "/webhooks/revenuecat",
    "/billing/webhook/revenuecat",
)

USAGE_CACHE_PRUNE_SEC = float(os.getenv("USAGE_CACHE_PRUNE_SEC", "60"))


def _prune_cache_loop(stop: threading.Event):
    # drops expired snapshots of users who never came back
    while not stop.wait(USAGE_CACHE_PRUNE_SEC):
        n = billing.cache.prune()
        if n:
            log.debug("[CACHE] pruned %s expired entries, %s left", n, len(billing.cache))


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("[BOOT] start | cache_ttl=%ss | prune_every=%ss | debug_mode=%s",
             billing.cache.ttl_sec,
             USAGE_CACHE_PRUNE_SEC,
             ("on" if billing.controller.debug_bypass else "off"))
    stop = threading.Event()
    threading.Thread(target=_prune_cache_loop, args=(stop,), name="usage-cache-prune", daemon=True).start()
    yield
    stop.set()
    log.info("[BOOT] stop")


app = FastAPI(title="Credits Gateway", lifespan=lifespan)

app.include_router(billing_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def audit(req: Request, call_next):
    t0 = time.time()
    resp = await call_next(req)
    if req.url.path in AUDITED_PATHS:
        ip = req.client.host if req.client else "-"
        log.info("[AUDIT] ip=%s %s %s -> %s in %dms",
                 ip, req.method, req.url.path, resp.status_code, int((time.time() - t0) * 1000))
    return resp


@app.get("/health")
def health():
    return {
        "ok": True,
        "cache_ttl_sec": billing.cache.ttl_sec,
        "cached_users": len(billing.cache),
        "debug_mode": bool(billing.controller.debug_bypass),
        "endpoints": {
            "credits": "/credits",
            "revenuecat_webhook": "/webhooks/revenuecat",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "10000")),
        reload=False,
        log_level="info",
        access_log=False
    )
