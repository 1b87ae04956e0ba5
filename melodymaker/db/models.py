"""SQLAlchemy ORM models for generated tracks.

Tables:
- tracks: One row per generation request, from submission to terminal outcome
- track_updates: Append-only log of status transitions, consumed by viewers
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from melodymaker.db.database import Base


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Track(Base):
    """A music generation job and, once completed, the generated track.

    ``status`` is one of ``generating`` / ``completed`` / ``failed`` and only
    changes through ``melodymaker.services.track_repository`` so that the
    terminal-state guard and the ``track_updates`` log stay consistent.
    ``file_url`` is set iff the track is completed; ``error_message`` only
    when it failed.
    """

    __tablename__ = "tracks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Snapshot of the reference tracks as submitted (camelCase wire dicts).
    selected_songs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    # {"prompt": str, "duration": int, "model": str, "modelVersion": str}
    generation_params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    genres: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tempo: Mapped[int] = mapped_column(Integer, nullable=False, default=120)
    energy: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    valence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="generating", index=True)
    # Replicate prediction id; one track maps to exactly one prediction.
    prediction_id: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True, index=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now
    )

    updates: Mapped[list[TrackUpdate]] = relationship(
        "TrackUpdate",
        back_populates="track",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TrackUpdate(Base):
    """One observed status transition of a track.

    Written only as a side effect of a status change; never mutated
    afterwards except for ``seen``, which belongs to viewers.
    """

    __tablename__ = "track_updates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_uuid)
    track_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("tracks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, index=True
    )
    seen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    track: Mapped[Track] = relationship("Track", back_populates="updates")
