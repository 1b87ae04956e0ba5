"""Pydantic models for the MelodyMaker API."""
from __future__ import annotations

from melodymaker.models.base import CamelModel
from melodymaker.models.tracks import (
    AudioFeatures,
    GenerateRequest,
    GenerateResponse,
    ReferenceTrack,
    TrackEvent,
    TrackResponse,
    WebhookAck,
)

__all__ = [
    "CamelModel",
    "AudioFeatures",
    "GenerateRequest",
    "GenerateResponse",
    "ReferenceTrack",
    "TrackEvent",
    "TrackResponse",
    "WebhookAck",
]
