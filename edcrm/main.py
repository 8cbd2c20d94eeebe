import os
from contextlib import asynccontextmanager
import logging

import psycopg
from fastapi import FastAPI, HTTPException

from .logging_config import setup_logging
from .routes import crm, drive, mail, settings
from .services.database import database_configured, get_database_url
from .services.migrations import run_migrations


log = logging.getLogger("edcrm")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and run settings migrations on startup."""
    setup_logging()
    if database_configured():
        try:
            run_migrations()
            log.info("Database migrations completed successfully")
        except Exception as e:
            log.error("Startup failed: %s", e)
            raise
    else:
        log.info("DATABASE_URL not set; settings are kept in memory")
    yield


app = FastAPI(title="Education CRM Sync API", version="0.1.0", lifespan=lifespan)

# Settings first: /crm/settings/{key} would otherwise match /crm/{kind}/{row_index}
app.include_router(settings.router)
app.include_router(mail.router)
app.include_router(drive.router)
app.include_router(crm.router)


@app.get("/api/health")
def health():
    """Minimal liveness endpoint."""
    return {"status": "ok"}


@app.get("/api/db/health")
def db_health():
    """Lightweight DB connectivity check using DATABASE_URL.

    Returns:
        { status: "ok" | "skipped" | "error", details?: str }
    """
    if not database_configured():
        return {"status": "skipped", "details": "DATABASE_URL not set"}
    try:
        with psycopg.connect(get_database_url(), connect_timeout=3) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT current_database(), current_user")
                dbname, user = cur.fetchone()
        return {"status": "ok", "database": dbname, "user": user}
    except Exception as e:  # pragma: no cover
        raise HTTPException(status_code=500, detail=f"DB check failed: {e}")


@app.get("/api/workbook/health")
def workbook_health():
    """Report whether the CRM workbook and MSAL client are configured (no Graph call)."""
    return {
        "status": "ok",
        "workbook_configured": bool(os.environ.get("CRM_WORKBOOK_SHARING_URL")),
        "msal_configured": bool(os.environ.get("MICROSOFT_CLIENT_ID")),
    }
