# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""TripDesk Server - Main FastAPI application."""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tripdesk_server.config import settings
from tripdesk_server.database import init_db
from tripdesk_server.deps import get_code_store
from tripdesk_server.errors import register_exception_handlers
from tripdesk_server.routers import auth
from tripdesk_server.services.code_store import CodeStore, LocalCodeTier, RedisCodeTier
from tripdesk_server.services.google import build_google_verifier

logger = logging.getLogger(__name__)


def _get_cors_origins() -> list[str]:
    raw = (settings.cors_origins or "*").strip()
    if raw == "*":
        return ["*"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def build_code_store() -> CodeStore:
    """Redis-backed store when REDIS_URL is set, local tier only otherwise."""
    shared = None
    if settings.redis_url:
        shared = RedisCodeTier.from_url(settings.redis_url, settings.redis_connect_timeout)
    else:
        logger.info("REDIS_URL not set - one-time codes kept in process memory")
    local = LocalCodeTier(max_entries=settings.otp_local_max_entries)
    return CodeStore(shared, local, local_fallback=settings.otp_local_fallback)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    await init_db()
    app.state.code_store = build_code_store()
    app.state.google_verifier = build_google_verifier()
    if not await app.state.code_store.is_available():
        logger.warning("Redis unreachable at startup - codes will use the local fallback")

    sweeper = None
    if settings.otp_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            app.state.code_store.run_sweeper(settings.otp_sweep_interval_seconds)
        )
    yield
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await app.state.code_store.close()


app = FastAPI(
    title="TripDesk Server",
    description="Travel booking API: accounts and authentication",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path, status, and duration for each request (no body or auth headers)."""
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, duration_ms)
    return response


# API v1
app.include_router(auth.router, prefix="/api/v1")


@app.get("/")
async def root():
    """API info."""
    return {
        "name": "TripDesk Server",
        "version": "0.1.0",
        "api": "/api/v1",
        "docs": "/api/docs",
    }


@app.get("/api/v1/health")
async def health(codes: CodeStore = Depends(get_code_store)):
    """Health check for load balancers. Reports which code tier is in use."""
    shared_up = await codes.is_available()
    return {"status": "ok", "code_store": "shared" if shared_up else "local"}
