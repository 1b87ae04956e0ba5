"""Tracks schema: generation jobs and their notification log.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates:
  - tracks (one row per generation request; prediction_id correlates
    Replicate callbacks and is unique)
  - track_updates (append-only status-change log, cascades with its track)

Fresh install:
  alembic upgrade head
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tracks",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("selected_songs", sa.JSON(), nullable=False),
        sa.Column("generation_params", sa.JSON(), nullable=False),
        sa.Column("genres", sa.JSON(), nullable=False),
        sa.Column("tempo", sa.Integer(), nullable=False, server_default="120"),
        sa.Column("energy", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("valence", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("status", sa.String(20), nullable=False, server_default="generating"),
        sa.Column("prediction_id", sa.String(64), nullable=True),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column("file_path", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.CheckConstraint(
            "status IN ('generating', 'completed', 'failed')",
            name="ck_tracks_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tracks_status", "tracks", ["status"])
    op.create_index("ix_tracks_prediction_id", "tracks", ["prediction_id"], unique=True)
    op.create_index("ix_tracks_created_at", "tracks", ["created_at"])

    op.create_table(
        "track_updates",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("track_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("seen", sa.Boolean(), nullable=False, server_default="false"),
        sa.ForeignKeyConstraint(["track_id"], ["tracks.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_track_updates_track_id", "track_updates", ["track_id"])
    op.create_index("ix_track_updates_updated_at", "track_updates", ["updated_at"])


def downgrade() -> None:
    op.drop_index("ix_track_updates_updated_at", table_name="track_updates")
    op.drop_index("ix_track_updates_track_id", table_name="track_updates")
    op.drop_table("track_updates")
    op.drop_index("ix_tracks_created_at", table_name="tracks")
    op.drop_index("ix_tracks_prediction_id", table_name="tracks")
    op.drop_index("ix_tracks_status", table_name="tracks")
    op.drop_table("tracks")
