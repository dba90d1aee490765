# main.py
import logging

from fastapi import FastAPI

from outreach.config import settings
from outreach.bloomerang.summary import SummaryCache
from outreach.outreach_lists.store import MemoryStore, PostgresStore

# App routers
from outreach.bloomerang.routes import router as bloomerang_router
from outreach.outreach_lists.routes import router as outreach_lists_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI(title="Outreach Enrichment", version="1.0.0")

# ── Shared state ──────────────────────────────────────────────────────────────
# No DATABASE_URL → in-process store (lost on restart)
if settings.DATABASE_URL:
    from outreach.db import get_conn
    app.state.store = PostgresStore(get_conn)
else:
    log.warning("[main] DATABASE_URL not set; using in-memory store")
    app.state.store = MemoryStore()
app.state.summary_cache = SummaryCache(ttl_seconds=settings.SUMMARY_CACHE_TTL_SECONDS)


@app.on_event("startup")
def ensure_tables():
    if settings.DATABASE_URL:
        from outreach.database import init_db
        init_db()


# Healthcheck
@app.get("/healthz")
def healthcheck():
    return {"ok": True}

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(bloomerang_router)
app.include_router(outreach_lists_router)
