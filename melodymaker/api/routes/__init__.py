"""API route modules."""
from __future__ import annotations

from melodymaker.api.routes import health, spotify, stream, tracks, webhooks

__all__ = ["health", "spotify", "stream", "tracks", "webhooks"]
