# ================================================================
# ColdTrack — Compliance Backend
# Fridge temperature checks + recurring audit checklists
# ================================================================
# Hosts the compliance engine (app/compliance) and the outbound
# event log (app/eventstream). The acting user is read from the
# session; there is no login flow here.
# ================================================================

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

import datetime
import logging
import os
import sqlite3

from app.compliance import (
    register_compliance_routes,
    init_compliance_scheduler,
    shutdown_compliance_scheduler,
)
from app.compliance import models as compliance_models
from app.eventstream import register_eventstream_routes

# ================================================================
# LOGGING
# ================================================================

logging.basicConfig(
    level=os.environ.get("COLDTRACK_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("coldtrack")

TEST_MODE = os.environ.get("COMPLIANCE_TEST_MODE") == "1"

# ================================================================
# FASTAPI APP
# ================================================================

app = FastAPI(title="ColdTrack Compliance")
app.add_middleware(
    SessionMiddleware,
    secret_key=os.environ.get("COLDTRACK_SESSION_SECRET", "coldtrack-dev-secret"),
)

register_compliance_routes(app)
register_eventstream_routes(app)


@app.on_event("startup")
async def _startup():
    if TEST_MODE:
        logger.info("Test mode: compliance scheduler not started")
        return
    init_compliance_scheduler()
    logger.info("ColdTrack backend startup")


@app.on_event("shutdown")
async def _shutdown():
    shutdown_compliance_scheduler()


# ================================================================
# HEALTH & PING
# ================================================================

@app.get("/api/ping")
async def api_ping():
    return {"ok": True, "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")}


@app.get("/api/health")
async def api_health():
    db_connected = True
    counts = {}
    try:
        conn = compliance_models._get_conn()
        for table in ("checklists", "assets", "occurrences"):
            counts[table] = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()["cnt"]
        counts["open_occurrences"] = conn.execute(
            "SELECT COUNT(*) AS cnt FROM occurrences WHERE status = 'REQUIRED'"
        ).fetchone()["cnt"]
        conn.close()
    except sqlite3.Error as e:
        logger.error(f"Health check DB error: {e}")
        db_connected = False

    return {"ok": db_connected, "db_connected": db_connected, "test_mode": TEST_MODE, **counts}
