"""Track record store: persistence and state transitions for generation jobs.

This module is the only writer of ``tracks.status``.  Every terminal write is
a conditional UPDATE predicated on the states the state machine allows
as sources (only ``generating``), so the terminal-state guard and the
write are one atomic statement: two concurrent callbacks for the same
prediction cannot both complete (or fail) a track.
A status-changing write appends exactly one ``track_updates`` row in the same
transaction; writes that do not change status append nothing.

Session contract:
- Functions flush but never commit; the caller owns the transaction.
- After committing a ``TransitionResult`` the caller passes it to
  ``announce()`` so live subscribers hear about it.  Broadcasting happens
  strictly after commit so viewers never see an event for a rolled-back write.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.db.models import Track, TrackUpdate
from melodymaker.models.tracks import (
    RecentTrack,
    TrackEvent,
    TrackResponse,
    TrackUpdateResponse,
)
from melodymaker.services.track_broadcaster import get_track_broadcaster
from melodymaker.services.track_state import TrackStatus, sources_for

logger = logging.getLogger(__name__)

# Stored when a failure is reported without any usable reason.
GENERIC_FAILURE_MESSAGE = "Generation failed"


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a guarded terminal transition.

    ``applied`` is False when the track was already terminal (or missing);
    in that case nothing was written and ``update`` is None.
    """

    applied: bool
    track: Track | None
    update: TrackUpdate | None = None


# ---------------------------------------------------------------------------
# Wire conversion
# ---------------------------------------------------------------------------


def to_track_response(track: Track) -> TrackResponse:
    return TrackResponse(
        id=track.id,
        title=track.title,
        description=track.description,
        selected_songs=list(track.selected_songs or []),
        generation_params=dict(track.generation_params or {}),
        genres=list(track.genres or []),
        tempo=track.tempo,
        energy=track.energy,
        valence=track.valence,
        status=track.status,
        prediction_id=track.prediction_id,
        file_url=track.file_url,
        file_path=track.file_path,
        duration=track.duration,
        error_message=track.error_message,
        created_at=track.created_at,
        updated_at=track.updated_at,
    )


def to_recent_track(track: Track) -> RecentTrack:
    return RecentTrack(
        id=track.id,
        title=track.title,
        duration=track.duration,
        status=track.status,
        created_at=track.created_at,
        file_url=track.file_url,
    )


def to_update_response(row: TrackUpdate) -> TrackUpdateResponse:
    return TrackUpdateResponse(
        id=row.id,
        track_id=row.track_id,
        status=row.status,
        message=row.message,
        data=row.data,
        updated_at=row.updated_at,
        seen=row.seen,
    )


def to_track_event(row: TrackUpdate) -> TrackEvent:
    return TrackEvent(
        track_id=row.track_id,
        status=row.status,
        message=row.message,
        data=row.data,
        update_id=row.id,
        updated_at=row.updated_at,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_track(session: AsyncSession, track_id: str) -> Track | None:
    """Return a track by id, always reflecting the latest committed row."""
    stmt = (
        select(Track)
        .where(Track.id == track_id)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_track_for_update(session: AsyncSession, track_id: str) -> Track | None:
    """Like get_track, but row-locked until the session commits (Postgres)."""
    stmt = (
        select(Track)
        .where(Track.id == track_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_track_by_prediction_id(
    session: AsyncSession,
    prediction_id: str,
) -> Track | None:
    """Return the track correlated with a Replicate prediction, or None."""
    stmt = (
        select(Track)
        .where(Track.prediction_id == prediction_id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_recent_tracks(
    session: AsyncSession,
    *,
    limit: int,
    status: TrackStatus = TrackStatus.COMPLETED,
) -> list[Track]:
    """Return the newest ``limit`` tracks in ``status``, newest first.

    Each call re-queries; there is no cursor.
    """
    stmt = (
        select(Track)
        .where(Track.status == status.value)
        .order_by(Track.created_at.desc())
        .limit(limit)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows)


async def list_track_updates(
    session: AsyncSession,
    track_id: str,
    *,
    limit: int = 50,
) -> list[TrackUpdate]:
    """Return the notification log for a track, newest first."""
    stmt = (
        select(TrackUpdate)
        .where(TrackUpdate.track_id == track_id)
        .order_by(TrackUpdate.updated_at.desc())
        .limit(limit)
    )
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def create_track(
    session: AsyncSession,
    *,
    title: str,
    description: str,
    selected_songs: list[dict[str, Any]],
    generation_params: dict[str, Any],
    genres: list[str],
    tempo: int,
    energy: float,
    valence: float,
) -> Track:
    """Insert a new track in ``generating`` state.  The caller must commit."""
    now = _utc_now()
    track = Track(
        title=title,
        description=description,
        selected_songs=selected_songs,
        generation_params=generation_params,
        genres=genres,
        tempo=tempo,
        energy=energy,
        valence=valence,
        status=TrackStatus.GENERATING.value,
        created_at=now,
        updated_at=now,
    )
    session.add(track)
    await session.flush()
    await session.refresh(track)
    logger.info(f"✅ Track record created: {track.id} ({track.title!r})")
    return track


async def set_prediction_id(
    session: AsyncSession,
    track_id: str,
    prediction_id: str,
) -> bool:
    """Attach the Replicate prediction id to a generating track.

    The id is written at most once: returns False (and writes nothing) when
    the track already carries a prediction id or is no longer generating.
    """
    stmt = (
        update(Track)
        .where(
            Track.id == track_id,
            Track.prediction_id.is_(None),
            Track.status == TrackStatus.GENERATING.value,
        )
        .values(prediction_id=prediction_id, updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        logger.warning(
            f"⚠️ Prediction {prediction_id} not attached to track {track_id}: "
            "track missing, terminal, or already correlated"
        )
        return False
    logger.info(f"Track {track_id} correlated with prediction {prediction_id}")
    return True


async def touch_track(session: AsyncSession, track_id: str) -> bool:
    """Bump ``updated_at`` on a generating track.  No status change, no event."""
    stmt = (
        update(Track)
        .where(Track.id == track_id, Track.status == TrackStatus.GENERATING.value)
        .values(updated_at=_utc_now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def _guarded_transition(
    session: AsyncSession,
    track_id: str,
    to_state: TrackStatus,
    *,
    values: dict[str, Any],
    message: str,
    data: dict[str, Any] | None,
) -> TransitionResult:
    sources = [state.value for state in sources_for(to_state)]
    now = _utc_now()
    stmt = (
        update(Track)
        .where(Track.id == track_id, Track.status.in_(sources))
        .values(status=to_state.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        track = await get_track(session, track_id)
        logger.info(
            f"Track {track_id} not moved to {to_state.value}: "
            f"current status is {track.status if track else 'missing'}"
        )
        return TransitionResult(applied=False, track=track)

    row = TrackUpdate(
        track_id=track_id,
        status=to_state.value,
        message=message,
        data=data,
        updated_at=now,
        seen=False,
    )
    session.add(row)
    await session.flush()
    track = await get_track(session, track_id)
    return TransitionResult(applied=True, track=track, update=row)


async def mark_completed(
    session: AsyncSession,
    track_id: str,
    *,
    file_url: str,
    file_path: str,
    duration: int,
) -> TransitionResult:
    """Move a generating track to ``completed`` with its relocated artifact."""
    result = await _guarded_transition(
        session,
        track_id,
        TrackStatus.COMPLETED,
        values={
            "file_url": file_url,
            "file_path": file_path,
            "duration": duration,
            "error_message": None,
        },
        message="Your track is ready",
        data={"fileUrl": file_url, "duration": duration},
    )
    if result.applied:
        logger.info(f"✅ Track {track_id} completed → {file_path}")
    return result


async def mark_failed(
    session: AsyncSession,
    track_id: str,
    error_message: str | None,
) -> TransitionResult:
    """Move a generating track to ``failed``, storing a non-empty reason."""
    reason = (error_message or "").strip() or GENERIC_FAILURE_MESSAGE
    result = await _guarded_transition(
        session,
        track_id,
        TrackStatus.FAILED,
        values={"error_message": reason, "file_url": None, "file_path": None},
        message=f"Track generation failed: {reason}",
        data={"errorMessage": reason},
    )
    if result.applied:
        logger.warning(f"❌ Track {track_id} failed: {reason}")
    return result


async def mark_update_seen(
    session: AsyncSession,
    track_id: str,
    update_id: str,
) -> TrackUpdate | None:
    """Flag a notification as seen.  Returns None when it does not exist."""
    stmt = select(TrackUpdate).where(
        TrackUpdate.id == update_id,
        TrackUpdate.track_id == track_id,
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        return None
    row.seen = True
    await session.flush()
    return row


# ---------------------------------------------------------------------------
# Fan-out hook
# ---------------------------------------------------------------------------


def announce(result: TransitionResult) -> int:
    """Publish a committed transition to live subscribers.

    Must be called after the session commit.  No-op for transitions that
    were not applied.  Returns the number of subscriber queues reached.
    """
    if not result.applied or result.update is None:
        return 0
    return get_track_broadcaster().publish(to_track_event(result.update))
