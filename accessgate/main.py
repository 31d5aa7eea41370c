"""FastAPI application entry point for the Coin WiFi Access Control Engine.

The service meters paid internet access per device: it keeps each device's
session, schedules its expiry, and enforces access by driving packet-filter
rules on the gateway.

Run with: uvicorn accessgate.main:app
"""

import logging

from fastapi import FastAPI

from accessgate.config import settings
from accessgate.routers.sessions import router as sessions_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Access control engine for a coin-operated WiFi hotspot. Starts, "
        "extends, pauses, resumes and ends per-device sessions and keeps the "
        "gateway firewall in line with them."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(sessions_router)


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@app.on_event("startup")
def on_startup():  # pragma: no cover
    """Create tables, build the engine and recover persisted sessions."""
    from accessgate.database import SessionLocal, engine, init_db
    from accessgate.engine import build_engine

    configure_logging()
    if getattr(app.state, "engine", None) is None:
        init_db(engine, SessionLocal)
        app.state.engine = build_engine(settings, SessionLocal)
    if not app.state.engine.started:
        app.state.engine.start()


@app.on_event("shutdown")
def on_shutdown():  # pragma: no cover
    """Stop background threads; active sessions stay in storage."""
    access_engine = getattr(app.state, "engine", None)
    if access_engine is not None and access_engine.started:
        access_engine.stop()


@app.get("/", tags=["Health"])
def health_check():
    """Health check endpoint to verify the service is running."""
    access_engine = getattr(app.state, "engine", None)
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "enforcement": "simulated" if access_engine and access_engine.simulated else "iptables",
        "active_sessions": len(access_engine.manager.table) if access_engine else 0,
    }
