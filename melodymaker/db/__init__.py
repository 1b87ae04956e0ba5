"""
Database module for MelodyMaker.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from melodymaker.db.database import (
    get_db,
    init_db,
    close_db,
    AsyncSessionLocal,
)
from melodymaker.db.models import Track, TrackUpdate

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "Track",
    "TrackUpdate",
]
