"""SSE streams of track status changes.

GET /tracks/{track_id}/events: one track.  The first frame is the track's
current state (``type: trackState``) so a client that (re)connects never
misses a transition that happened while it was away; the stream ends after
a terminal event.

GET /tracks/events: every track, for dashboards.  Runs until the client
disconnects.

Frames are ``data: <TrackEvent JSON>\\n\\n``; a ``: ping`` comment is sent
when the stream has been idle for MELODY_SSE_PING_INTERVAL_SECONDS.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.api.routes._state import _sse_headers
from melodymaker.config import settings
from melodymaker.db import Track, get_db
from melodymaker.models.tracks import TrackEvent
from melodymaker.services import track_repository
from melodymaker.services.track_broadcaster import (
    ALL_TRACKS_TOPIC,
    TrackBroadcaster,
    get_track_broadcaster,
)
from melodymaker.services.track_state import is_terminal

router = APIRouter()
logger = logging.getLogger(__name__)

PING_FRAME = ": ping\n\n"


def sse_frame(event: TrackEvent) -> str:
    """Serialise one event as an SSE ``data:`` frame."""
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


def state_event(track: Track) -> TrackEvent:
    """Snapshot of a track's current state, sent first on every per-track stream."""
    data: dict[str, object] = {}
    if track.file_url:
        data["fileUrl"] = track.file_url
    if track.duration is not None:
        data["duration"] = track.duration
    if track.error_message:
        data["errorMessage"] = track.error_message
    return TrackEvent(
        type="trackState",
        track_id=track.id,
        status=track.status,
        data=data or None,
        updated_at=track.updated_at,
    )


async def event_stream(
    broadcaster: TrackBroadcaster,
    topic: str,
    queue: asyncio.Queue[TrackEvent | None],
    *,
    initial: TrackEvent | None = None,
    stop_on_terminal: bool = False,
    ping_interval: float | None = None,
) -> AsyncIterator[str]:
    """Yield SSE frames from ``queue`` until a terminal event or end-of-stream."""
    interval = ping_interval if ping_interval is not None else settings.sse_ping_interval_seconds
    try:
        if initial is not None:
            yield sse_frame(initial)
            if stop_on_terminal and is_terminal(initial.status):
                return

        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=interval)
            except asyncio.TimeoutError:
                yield PING_FRAME
                continue

            if event is None:
                break

            yield sse_frame(event)

            if stop_on_terminal and is_terminal(event.status):
                break
    finally:
        broadcaster.unsubscribe(topic, queue)


@router.get("/tracks/events")
async def stream_all_tracks() -> StreamingResponse:
    """Live status changes for every track."""
    broadcaster = get_track_broadcaster()
    queue = broadcaster.subscribe(ALL_TRACKS_TOPIC)
    return StreamingResponse(
        event_stream(broadcaster, ALL_TRACKS_TOPIC, queue),
        media_type="text/event-stream",
        headers=_sse_headers(),
    )


@router.get(
    "/tracks/{track_id}/events",
    responses={404: {"description": "Track not found"}},
)
async def stream_track(
    track_id: str,
    db: AsyncSession = Depends(get_db),
) -> StreamingResponse:
    """Live status changes for one track, starting with its current state."""
    broadcaster = get_track_broadcaster()
    # Subscribe before reading so a transition committed in between is
    # delivered as an event rather than lost.
    queue = broadcaster.subscribe(track_id)

    track = await track_repository.get_track(db, track_id)
    if track is None:
        broadcaster.unsubscribe(track_id, queue)
        raise HTTPException(
            status_code=404,
            detail={"error": "track_not_found", "message": f"Track not found: {track_id}"},
        )

    return StreamingResponse(
        event_stream(
            broadcaster,
            track_id,
            queue,
            initial=state_event(track),
            stop_on_terminal=True,
        ),
        media_type="text/event-stream",
        headers=_sse_headers(),
    )
