"""Reference-track search, proxied to Spotify."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query

from melodymaker.models.tracks import ReferenceTrack, TrackSearchResponse
from melodymaker.services.errors import SpotifyError
from melodymaker.services.spotify import DEFAULT_SEARCH_LIMIT, get_spotify_client

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/spotify/search",
    response_model=TrackSearchResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
    responses={502: {"description": "Spotify search failed"}},
)
async def search_tracks(
    q: str = Query(default="", max_length=200),
    limit: int = Query(default=DEFAULT_SEARCH_LIMIT, ge=1, le=50),
) -> TrackSearchResponse:
    """Search Spotify for reference tracks.  Queries under two characters return nothing."""
    try:
        tracks = await get_spotify_client().search(q, limit=limit)
    except SpotifyError as exc:
        logger.error(f"❌ Spotify search error: {exc}")
        raise HTTPException(
            status_code=502,
            detail={"error": "search_failed", "message": "Search failed"},
        )
    return TrackSearchResponse(tracks=tracks)


@router.get(
    "/spotify/tracks/{spotify_track_id}",
    response_model=ReferenceTrack,
    response_model_by_alias=True,
    responses={
        404: {"description": "Unknown Spotify track"},
        502: {"description": "Spotify request failed"},
    },
)
async def spotify_track_details(spotify_track_id: str) -> ReferenceTrack:
    """Details for one track, with audio features and genres when available."""
    try:
        return await get_spotify_client().track_details(spotify_track_id)
    except SpotifyError as exc:
        if exc.status_code in (400, 404):
            raise HTTPException(
                status_code=404,
                detail={"error": "track_not_found", "message": str(exc)},
            )
        logger.error(f"❌ Spotify track details error: {exc}")
        raise HTTPException(
            status_code=502,
            detail={"error": "upstream_error", "message": "Failed to fetch track details"},
        )
