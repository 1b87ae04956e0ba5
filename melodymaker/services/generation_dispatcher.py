"""Generation dispatcher: turns a user request into a track and a Replicate job.

Flow:
    submit_generation()  (request path, returns immediately)
        validate → synthesize title/prompt → persist track (generating) → commit
        → generation_tasks.spawn(run_prediction(...))
    run_prediction()     (detached task, own DB session)
        ReplicateClient.create_prediction(prompt, duration, webhook_url)
        accepted → set_prediction_id
        rejected → mark_failed(classified message) → announce

Errors before the track exists are raised to the caller; errors after it
exists only ever reach the user through ``tracks.error_message``.
"""
from __future__ import annotations

import logging
import random
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.config import MAX_REFERENCE_TRACKS, settings
from melodymaker.db.database import AsyncSessionLocal
from melodymaker.db.models import Track
from melodymaker.models.tracks import GeneratedTrackSummary, ReferenceTrack
from melodymaker.services import generation_tasks, track_repository
from melodymaker.services.errors import GenerationValidationError, ReplicateError
from melodymaker.services.replicate import ReplicateClient, get_replicate_client
from melodymaker.services.title_synthesis import compute_aggregates, synthesize

logger = logging.getLogger(__name__)

GENERATION_MODEL = "musicgen"

# Rough wall-clock estimate surfaced to clients; not a deadline.
ESTIMATED_GENERATION_SECONDS = 60

WEBHOOK_PATH = "/api/v1/webhooks/replicate"

# Substring of Replicate's error → message shown to the user.
_REPLICATE_ERROR_MESSAGES: tuple[tuple[str, str], ...] = (
    ("invalid version", "The MusicGen model version is not available. Please try again later."),
    ("rate limit", "Rate limit exceeded. Please wait a moment before trying again."),
    ("insufficient credits", "Insufficient Replicate credits. Please check your account."),
    ("an error occurred", "Replicate service error. Please try again later."),
)


def classify_replicate_error(exc: BaseException) -> str:
    """Map a Replicate failure onto a user-facing message."""
    text = str(exc)
    lower = text.lower()
    for needle, message in _REPLICATE_ERROR_MESSAGES:
        if needle in lower:
            return message
    if isinstance(exc, ReplicateError) and exc.status_code == 429:
        return "Rate limit exceeded. Please wait a moment before trying again."
    return text or "Failed to start generation"


def webhook_url() -> str:
    """Absolute callback URL Replicate should POST prediction events to."""
    base = settings.public_base_url
    if not base:
        base = f"http://localhost:{settings.melody_port}"
        logger.warning(
            f"⚠️ MELODY_PUBLIC_BASE_URL is not set; Replicate callbacks will target {base}"
        )
    return f"{base.rstrip('/')}{WEBHOOK_PATH}"


def validate_request(description: str, selected_songs: Sequence[ReferenceTrack]) -> None:
    """Reject requests that cannot produce a prompt, before anything is stored."""
    if not description.strip() and not selected_songs:
        raise GenerationValidationError("Either description or selected songs must be provided")
    if len(selected_songs) > MAX_REFERENCE_TRACKS:
        raise GenerationValidationError(
            f"At most {MAX_REFERENCE_TRACKS} reference songs may be selected"
        )


def to_generated_summary(track: Track) -> GeneratedTrackSummary:
    created = track.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return GeneratedTrackSummary(
        id=track.id,
        title=track.title,
        created_at=created,
        estimated_completion=datetime.now(tz=timezone.utc)
        + timedelta(seconds=ESTIMATED_GENERATION_SECONDS),
    )


async def submit_generation(
    session: AsyncSession,
    *,
    description: str,
    selected_songs: Sequence[ReferenceTrack],
    rng: random.Random | None = None,
) -> Track:
    """Create a generating track and schedule its Replicate submission.

    Commits the track before scheduling so the detached task (which uses its
    own session) can see it.  Returns without waiting for Replicate.
    """
    validate_request(description, selected_songs)

    synthesis = synthesize(description, selected_songs, rng=rng)
    aggregates = compute_aggregates(selected_songs)
    duration = settings.generation_duration_seconds
    logger.info(f"Generated prompt: {synthesis.prompt!r}")

    track = await track_repository.create_track(
        session,
        title=synthesis.title,
        description=description,
        selected_songs=[s.model_dump(by_alias=True, exclude_none=True) for s in selected_songs],
        generation_params={
            "prompt": synthesis.prompt,
            "duration": duration,
            "model": GENERATION_MODEL,
            "modelVersion": settings.replicate_model_version,
        },
        genres=aggregates.genres,
        tempo=aggregates.tempo,
        energy=aggregates.energy,
        valence=aggregates.valence,
    )
    await session.commit()

    generation_tasks.spawn(
        track.id,
        run_prediction(track.id, prompt=synthesis.prompt, duration=duration),
    )
    return track


async def run_prediction(
    track_id: str,
    *,
    prompt: str,
    duration: int,
    client: ReplicateClient | None = None,
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
) -> None:
    """Submit the prediction for ``track_id`` and record the outcome."""
    replicate = client or get_replicate_client()
    try:
        prediction = await replicate.create_prediction(
            prompt=prompt,
            duration=duration,
            webhook_url=webhook_url(),
        )
    except ReplicateError as exc:
        message = classify_replicate_error(exc)
        logger.error(f"❌ Failed to start generation for track {track_id}: {exc}")
        await _fail_track(track_id, message, session_factory)
        return
    except Exception as exc:
        logger.exception(f"❌ Unexpected error starting generation for track {track_id}")
        await _fail_track(track_id, f"Failed to start generation: {exc}", session_factory)
        return

    async with session_factory() as session:
        await track_repository.set_prediction_id(session, track_id, prediction.id)
        await session.commit()
    logger.info(f"Generation started for track {track_id} with prediction {prediction.id}")


async def _fail_track(
    track_id: str,
    message: str,
    session_factory: Callable[[], AsyncSession],
) -> None:
    async with session_factory() as session:
        result = await track_repository.mark_failed(session, track_id, message)
        await session.commit()
    track_repository.announce(result)
