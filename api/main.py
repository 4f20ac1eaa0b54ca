"""
Taolu Tracker - API.

============================================================
RESPONSIBILITY
============================================================
Builds the FastAPI application serving the tracker router.
Tables are created on startup when missing.
============================================================
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.engine import (
    DatabaseConnectionError,
    initialize_database,
    verify_database_connection,
)
from taolu_tracker.router import router as taolu_router

logger = logging.getLogger(__name__)

_startup_time = datetime.utcnow()


@asynccontextmanager
async def lifespan(app: FastAPI):
    initialize_database()
    logger.info("Taolu Tracker API started")
    yield
    logger.info("Taolu Tracker API stopped")


app = FastAPI(
    title="Taolu Tracker API",
    description="Live taolu judging, deduction logging and refinement scoring.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS (Allow local frontend development)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(taolu_router)


@app.get("/", tags=["Root"])
def root():
    return {"status": "ok", "message": "Taolu Tracker API is running"}


@app.get("/health", tags=["Root"])
def health():
    """Liveness plus database reachability."""
    try:
        database_ok = verify_database_connection()
    except DatabaseConnectionError as e:
        logger.warning(f"Health check database failure: {e}")
        database_ok = False
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": database_ok,
        "timestamp": datetime.utcnow().isoformat(),
        "uptime_seconds": (datetime.utcnow() - _startup_time).total_seconds(),
    }
