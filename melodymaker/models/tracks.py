"""Pydantic v2 request/response models for the tracks API.

All wire-format fields use camelCase via CamelModel.  Python code uses
snake_case throughout; only serialisation to JSON uses camelCase.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import Field

from melodymaker.models.base import CamelModel


# ── Reference tracks ──────────────────────────────────────────────────────────


class AudioFeatures(CamelModel):
    """Spotify-style audio feature vector for one reference track."""

    danceability: float = Field(0.0, ge=0.0, le=1.0)
    energy: float = Field(0.5, ge=0.0, le=1.0)
    valence: float = Field(0.5, ge=0.0, le=1.0)
    tempo: float = Field(120.0, ge=0.0, le=300.0)
    key: int = Field(0, ge=-1, le=11)
    mode: int = Field(1, ge=0, le=1)
    time_signature: int = Field(4, ge=0, le=7)
    acousticness: float = Field(0.0, ge=0.0, le=1.0)
    instrumentalness: float = Field(0.0, ge=0.0, le=1.0)
    speechiness: float = Field(0.0, ge=0.0, le=1.0)


class ReferenceTrack(CamelModel):
    """A user-selected song used to seed the title and prompt.

    Stored as a snapshot inside the track row; it does not stay linked to
    the search provider's catalogue.
    """

    id: str
    name: str
    artist: str = "Unknown Artist"
    album: str = ""
    genres: list[str] | None = None
    audio_features: AudioFeatures | None = None
    image: str | None = None
    preview_url: str | None = None
    external_url: str | None = None
    popularity: int | None = None
    duration_ms: int | None = None


# ── Generation ────────────────────────────────────────────────────────────────


class GenerateRequest(CamelModel):
    """Body for POST /tracks/generate.

    At least one of ``description`` / ``selected_songs`` must be non-empty;
    the dispatcher enforces this (and the five-song cap) with HTTP 400.
    """

    description: str = ""
    selected_songs: list[ReferenceTrack] = Field(default_factory=list)


class GeneratedTrackSummary(CamelModel):
    """The part of a freshly created track returned synchronously."""

    id: str
    title: str
    status: Literal["generating"] = "generating"
    created_at: datetime
    estimated_completion: datetime


class GenerateResponse(CamelModel):
    """Response for POST /tracks/generate."""

    success: bool = True
    track: GeneratedTrackSummary


# ── Track reads ───────────────────────────────────────────────────────────────


TrackStatusLiteral = Literal["generating", "completed", "failed"]


class TrackResponse(CamelModel):
    """Full wire representation of a track record."""

    id: str
    title: str
    description: str
    selected_songs: list[dict[str, Any]] = Field(default_factory=list)
    generation_params: dict[str, Any] = Field(default_factory=dict)
    genres: list[str] = Field(default_factory=list)
    tempo: int
    energy: float
    valence: float
    status: TrackStatusLiteral
    prediction_id: str | None = None
    file_url: str | None = None
    file_path: str | None = None
    duration: int | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class RecentTrack(CamelModel):
    """Compact listing entry for GET /tracks/recent."""

    id: str
    title: str
    duration: int | None = None
    status: TrackStatusLiteral
    created_at: datetime
    file_url: str | None = None


class RecentTracksResponse(CamelModel):
    """Response for GET /tracks/recent."""

    tracks: list[RecentTrack]


class TrackUpdateResponse(CamelModel):
    """One entry of a track's notification log."""

    id: str
    track_id: str
    status: TrackStatusLiteral
    message: str | None = None
    data: dict[str, Any] | None = None
    updated_at: datetime
    seen: bool


class TrackUpdateListResponse(CamelModel):
    """Response for GET /tracks/{track_id}/updates."""

    updates: list[TrackUpdateResponse]


# ── Fan-out ───────────────────────────────────────────────────────────────────


class TrackEvent(CamelModel):
    """A status-change notification pushed to live subscribers."""

    type: Literal["trackUpdate", "trackState"] = "trackUpdate"
    track_id: str
    status: TrackStatusLiteral
    message: str | None = None
    data: dict[str, Any] | None = None
    update_id: str | None = None
    updated_at: datetime


# ── Webhook acknowledgement ───────────────────────────────────────────────────


WebhookOutcomeLiteral = Literal["completed", "failed", "in_progress", "ignored", "noted"]


class WebhookAck(CamelModel):
    """Successful acknowledgement of a Replicate callback.

    ``outcome`` tells the caller exactly what happened: a terminal transition
    (``completed`` / ``failed``), a progress ping (``in_progress``), a
    duplicate for an already-terminal track (``ignored``) or an unrecognised
    status that was acknowledged without mutation (``noted``).
    """

    success: bool = True
    outcome: WebhookOutcomeLiteral
    message: str
    track_id: str


# ── Search ────────────────────────────────────────────────────────────────────


class TrackSearchResponse(CamelModel):
    """Response for GET /spotify/search."""

    tracks: list[ReferenceTrack]
