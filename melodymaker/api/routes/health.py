"""Health check endpoints."""
from __future__ import annotations

import asyncio
from typing import Required
from typing_extensions import TypedDict

from fastapi import APIRouter

from melodymaker.config import settings
from melodymaker.services import generation_tasks
from melodymaker.services.replicate import get_replicate_client
from melodymaker.services.spotify import get_spotify_client
from melodymaker.services.storage import get_object_store
from melodymaker.services.track_broadcaster import get_track_broadcaster

router = APIRouter()

TAGLINE = "music from the songs you love"


class HealthDependencyDict(TypedDict, total=False):
    """Status entry for one external dependency in the full health check.

    ``status`` is always present.  ``bucket`` is reported for storage only.
    """

    status: Required[str]
    bucket: str     # storage only


class FullHealthCheckDict(TypedDict):
    """Response shape for ``GET /health/full``."""

    status: str             # "ok" | "degraded"
    service: str
    version: str
    tagline: str
    pendingGenerations: int
    activeStreams: int
    dependencies: dict[str, HealthDependencyDict]


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Basic health check."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "tagline": TAGLINE,
    }


@router.get("/health/full")
async def full_health_check() -> FullHealthCheckDict:
    """Full health check including dependencies.

    Reports:
    - Replicate: token configured and account endpoint reachable
    - Storage: bucket configured and reachable
    - Spotify: credentials configured (search degrades without them)
    """
    replicate_ok = await get_replicate_client().health_check()

    deps: dict[str, HealthDependencyDict] = {
        "replicate": {
            "status": "ok" if replicate_ok else (
                "unavailable" if settings.replicate_api_token else "unconfigured"
            ),
        },
    }

    storage_ok = False
    if settings.aws_s3_music_bucket:
        storage_ok = await asyncio.to_thread(get_object_store().check_reachable)
        deps["storage"] = {
            "status": "ok" if storage_ok else "error",
            "bucket": settings.aws_s3_music_bucket,
        }
    else:
        deps["storage"] = {"status": "unconfigured"}

    deps["spotify"] = {
        "status": "ok" if get_spotify_client().configured else "unconfigured",
    }

    all_ok = replicate_ok and storage_ok
    return {
        "status": "ok" if all_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "tagline": TAGLINE,
        "pendingGenerations": generation_tasks.pending_count(),
        "activeStreams": get_track_broadcaster().active_streams,
        "dependencies": deps,
    }
