"""
KeyPolicy Backend - FastAPI Application
Per-API-key usage policy administration for a proxying service
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.connection import init_db, close_db, async_session
from middleware.logging import RequestLogger
from routers import api_key_policies, events, settings
from services.event import log_event
from services.logger import configure_logging
from services.management_api import load_connection_from_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    configure_logging()
    await init_db()

    # Load management connection into memory cache on startup
    async with async_session() as session:
        await load_connection_from_db(session)
        await log_event(session, "system.start", "Application backend started", level="info")

    yield

    await close_db()


app = FastAPI(
    title="KeyPolicy API",
    description="API key policy administration",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:8047"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLogger)

# Include routers
app.include_router(api_key_policies.router, prefix="/api/key-policies", tags=["api-key-policies"])
app.include_router(settings.router, prefix="/api/settings", tags=["settings"])
app.include_router(events.router, prefix="/api/events", tags=["events"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8047, reload=True)
