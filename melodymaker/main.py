"""
MelodyMaker API

FastAPI application that turns a description and reference songs into a
generated music track.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from typing import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from melodymaker.config import settings
from melodymaker.api.routes import health, spotify, stream, tracks, webhooks
from melodymaker.api.routes._state import limiter
from melodymaker.db import init_db, close_db
from melodymaker.services import generation_tasks
from melodymaker.services.replicate import close_replicate_client
from melodymaker.services.spotify import close_spotify_client
from melodymaker.services.track_broadcaster import get_track_broadcaster, reset_track_broadcaster

# Seconds to wait for in-flight Replicate submissions on shutdown.
SHUTDOWN_DRAIN_TIMEOUT = 30.0


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "accelerometer=(), camera=(), geolocation=(), "
            "gyroscope=(), magnetometer=(), microphone=(), "
            "payment=(), usb=()"
        )
        return response

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Replicate model version: {settings.replicate_model_version[:12]}")
    logger.info(f"Storage bucket: {settings.aws_s3_music_bucket or '(not configured)'}")

    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    logger.info("Shutting down...")
    # Let detached submissions record their outcome before the DB goes away.
    await generation_tasks.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT)
    # End open SSE streams so their responses finish before the server exits.
    get_track_broadcaster().close_all()
    reset_track_broadcaster()
    await close_replicate_client()
    await close_spotify_client()
    await close_db()


app = FastAPI(
    title="MelodyMaker API",
    version=settings.app_version,
    description=(
        "Generate short music tracks from a text description and up to five "
        "reference songs.\n\n"
        "Generation is asynchronous: `POST /api/v1/tracks/generate` returns a "
        "track in `generating` state; follow it by polling "
        "`GET /api/v1/tracks/{id}` or via the SSE stream at "
        "`GET /api/v1/tracks/{id}/events`."
    ),
    lifespan=lifespan,
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Adapter: FastAPI expects (Request, Exception) but slowapi's handler
# takes (Request, RateLimitExceeded).
def _handle_rate_limit(request: Request, exc: Exception) -> Response:
    if isinstance(exc, RateLimitExceeded):
        return _rate_limit_exceeded_handler(request, exc)
    raise exc

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _handle_rate_limit)

# Security headers middleware (added first, runs last)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers. stream registers /tracks/events, which must be matched
# before the /tracks/{track_id} wildcard in tracks.
app.include_router(health.router, prefix="/api/v1", tags=["health"])
app.include_router(stream.router, prefix="/api/v1", tags=["stream"])
app.include_router(tracks.router, prefix="/api/v1", tags=["tracks"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])
app.include_router(spotify.router, prefix="/api/v1", tags=["spotify"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with service info."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.melody_host, port=settings.melody_port)
