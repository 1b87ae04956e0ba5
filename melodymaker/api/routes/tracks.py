"""Track endpoints: start a generation, read tracks and their notification log."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.api.routes._state import limiter
from melodymaker.config import settings
from melodymaker.db import get_db
from melodymaker.models.tracks import (
    GenerateRequest,
    GenerateResponse,
    RecentTracksResponse,
    TrackResponse,
    TrackUpdateListResponse,
    TrackUpdateResponse,
)
from melodymaker.services import generation_dispatcher, track_repository
from melodymaker.services.errors import (
    GenerationValidationError,
    PredictionNotSubmittedError,
    ReplicateError,
    TrackNotFoundError,
)
from melodymaker.services.replicate_webhook import refresh_track_status

router = APIRouter()
logger = logging.getLogger(__name__)


def _not_found(track_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"error": "track_not_found", "message": f"Track not found: {track_id}"},
    )


@router.post(
    "/tracks/generate",
    response_model=GenerateResponse,
    response_model_by_alias=True,
    responses={
        400: {"description": "Neither description nor reference songs, or too many songs"},
        429: {"description": "Rate limit exceeded"},
    },
)
@limiter.limit(settings.generate_rate_limit)
async def generate_track(
    request: Request,
    body: GenerateRequest,
    db: AsyncSession = Depends(get_db),
) -> GenerateResponse:
    """
    Start generating a track.

    Returns as soon as the track record exists; the Replicate submission runs
    in the background and the outcome arrives via webhook.  Follow progress
    with GET /tracks/{id} or the SSE stream at /tracks/{id}/events.
    """
    try:
        track = await generation_dispatcher.submit_generation(
            db,
            description=body.description,
            selected_songs=body.selected_songs,
        )
    except GenerationValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "message": str(exc)},
        )

    logger.info(f"🎵 Generation requested: track {track.id} ({track.title!r})")
    return GenerateResponse(track=generation_dispatcher.to_generated_summary(track))


@router.get(
    "/tracks/recent",
    response_model=RecentTracksResponse,
    response_model_by_alias=True,
)
async def recent_tracks(
    limit: int | None = Query(default=None, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
) -> RecentTracksResponse:
    """Most recently created completed tracks, newest first."""
    rows = await track_repository.list_recent_tracks(
        db, limit=limit or settings.recent_tracks_default_limit
    )
    return RecentTracksResponse(tracks=[track_repository.to_recent_track(t) for t in rows])


@router.get(
    "/tracks/{track_id}",
    response_model=TrackResponse,
    response_model_by_alias=True,
    responses={404: {"description": "Track not found"}},
)
async def get_track(track_id: str, db: AsyncSession = Depends(get_db)) -> TrackResponse:
    """Current state of one track.  Polling this endpoint is always sufficient."""
    track = await track_repository.get_track(db, track_id)
    if track is None:
        raise _not_found(track_id)
    return track_repository.to_track_response(track)


@router.post(
    "/tracks/{track_id}/refresh",
    response_model=TrackResponse,
    response_model_by_alias=True,
    responses={
        404: {"description": "Track not found"},
        409: {"description": "Generation has not been submitted to Replicate yet"},
        502: {"description": "Replicate could not be reached"},
    },
)
async def refresh_track(track_id: str, db: AsyncSession = Depends(get_db)) -> TrackResponse:
    """
    Re-read a generating track's prediction from Replicate.

    Applies the same transition a webhook would, for callbacks that never
    arrived.  Terminal tracks are returned unchanged.
    """
    try:
        outcome = await refresh_track_status(db, track_id)
    except TrackNotFoundError:
        raise _not_found(track_id)
    except PredictionNotSubmittedError as exc:
        raise HTTPException(
            status_code=409,
            detail={"error": "prediction_pending", "message": str(exc)},
        )
    except ReplicateError as exc:
        logger.warning(f"⚠️ Refresh of track {track_id} failed: {exc}")
        raise HTTPException(
            status_code=502,
            detail={"error": "upstream_error", "message": str(exc)},
        )

    await db.commit()
    if outcome.transition is not None:
        track_repository.announce(outcome.transition)

    track = await track_repository.get_track(db, track_id)
    if track is None:
        raise _not_found(track_id)
    return track_repository.to_track_response(track)


@router.get(
    "/tracks/{track_id}/updates",
    response_model=TrackUpdateListResponse,
    response_model_by_alias=True,
    responses={404: {"description": "Track not found"}},
)
async def track_updates(
    track_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> TrackUpdateListResponse:
    """Status-change notifications for a track, newest first."""
    if await track_repository.get_track(db, track_id) is None:
        raise _not_found(track_id)
    rows = await track_repository.list_track_updates(db, track_id, limit=limit)
    return TrackUpdateListResponse(
        updates=[track_repository.to_update_response(r) for r in rows]
    )


@router.post(
    "/tracks/{track_id}/updates/{update_id}/seen",
    response_model=TrackUpdateResponse,
    response_model_by_alias=True,
    responses={404: {"description": "Notification not found"}},
)
async def mark_update_seen(
    track_id: str,
    update_id: str,
    db: AsyncSession = Depends(get_db),
) -> TrackUpdateResponse:
    """Flag one notification as seen by the user."""
    row = await track_repository.mark_update_seen(db, track_id, update_id)
    if row is None:
        raise HTTPException(
            status_code=404,
            detail={"error": "update_not_found", "message": f"Notification not found: {update_id}"},
        )
    await db.commit()
    return track_repository.to_update_response(row)
