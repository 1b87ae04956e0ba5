"""Replicate callback ingestion: drives tracks from provider events.

Replicate POSTs prediction events (start / output / logs / completed) to
``/api/v1/webhooks/replicate``.  Processing contract:

1. Authenticate: when MELODY_REPLICATE_WEBHOOK_SECRET is set, the
   ``Replicate-Signature`` header must carry ``sha256=<hex>`` equal to
   HMAC-SHA256(secret, raw body).  Missing or mismatched → 401.  No secret
   configured → verification skipped (development only).
2. Parse the raw body as a JSON object → 400 on failure.
3. Correlate the prediction ``id`` with a track → 400 if absent, 404 if no
   track carries it.
4. Apply the transition (see ``apply_prediction``).  Events for a track that
   is already terminal are acknowledged and ignored, so replays never
   download twice or write a second ``track_updates`` row.

A successful relocation commits its own transition while it still holds the
track's relocation lock (see ``relocate_once``); every other path leaves the
commit to the caller, which then announces the transition.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from melodymaker.config import settings
from melodymaker.db.models import Track
from melodymaker.models.tracks import WebhookAck, WebhookOutcomeLiteral
from melodymaker.services import track_repository
from melodymaker.services.errors import (
    ArtifactRelocationError,
    PredictionNotSubmittedError,
    StorageError,
    TrackNotFoundError,
    WebhookAuthenticationError,
    WebhookValidationError,
)
from melodymaker.services.replicate import Prediction, ReplicateClient, get_replicate_client
from melodymaker.services.storage import S3ObjectStore, get_object_store
from melodymaker.services.track_repository import TransitionResult
from melodymaker.services.track_state import is_terminal

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Replicate-Signature"
SIGNATURE_PREFIX = "sha256="

ARTIFACT_CONTENT_TYPE = "audio/mpeg"
ARTIFACT_EXTENSION = ".mp3"

SUCCEEDED = "succeeded"
FAILURE_STATUSES = frozenset({"failed", "canceled"})
IN_PROGRESS_STATUSES = frozenset({"starting", "processing"})


@dataclass(frozen=True)
class WebhookOutcome:
    """What a provider event did to its track.

    ``relocation_failed`` marks the one case where the track was moved to
    ``failed`` but the caller should still see a 500: the audio existed at
    Replicate and could not be copied into owned storage.
    """

    outcome: WebhookOutcomeLiteral
    message: str
    track_id: str
    transition: TransitionResult | None = None
    relocation_failed: bool = False

    def to_ack(self) -> WebhookAck:
        return WebhookAck(outcome=self.outcome, message=self.message, track_id=self.track_id)


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


def sign_payload(secret: str, body: bytes) -> str:
    """Compute the ``sha256=<hex>`` HMAC signature for ``body``."""
    mac = hmac.new(secret.encode(), body, hashlib.sha256)
    return f"{SIGNATURE_PREFIX}{mac.hexdigest()}"


def verify_signature(body: bytes, signature: str | None, secret: str | None) -> None:
    """Raise WebhookAuthenticationError unless ``signature`` matches ``body``.

    The comparison runs over the exact raw bytes received and is constant
    time.  With no secret configured verification is skipped.
    """
    if not secret:
        logger.warning("⚠️ Webhook secret not configured; skipping signature verification")
        return
    if not signature:
        raise WebhookAuthenticationError("Missing webhook signature")

    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected.encode(), provided.encode()):
        raise WebhookAuthenticationError("Invalid signature")


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


def parse_payload(raw_body: bytes) -> dict[str, Any]:
    """Decode the callback body, which must be a JSON object."""
    try:
        data = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookValidationError("Invalid JSON") from exc
    if not isinstance(data, dict):
        raise WebhookValidationError("Invalid JSON: expected an object")
    return data


def extract_audio_url(output: Any) -> str:
    """Return the artifact URL from a prediction's ``output``.

    MusicGen returns a single URL; some models return a list, in which case
    the first element is used.  The URL must be an absolute http(s) URL.
    """
    candidate: Any = output
    if isinstance(output, list) and output:
        candidate = output[0]
    if not isinstance(candidate, str) or not candidate:
        raise ArtifactRelocationError("Unexpected output format from Replicate")

    try:
        url = httpx.URL(candidate)
    except httpx.InvalidURL as exc:
        raise ArtifactRelocationError(f"Invalid audio URL from Replicate: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise ArtifactRelocationError(f"Invalid audio URL from Replicate: {candidate[:200]}")
    return candidate


def artifact_key(track_id: str, now_ms: int | None = None) -> str:
    """Storage key for a track's audio; the timestamp keeps retries collision-free."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{track_id}_{stamp}{ARTIFACT_EXTENSION}"


# ---------------------------------------------------------------------------
# Artifact relocation
# ---------------------------------------------------------------------------


async def download_artifact(url: str, http_client: httpx.AsyncClient | None = None) -> bytes:
    """Fetch the finished audio, bounded by MELODY_ARTIFACT_DOWNLOAD_TIMEOUT."""
    timeout = settings.artifact_download_timeout
    logger.info(f"Downloading audio from: {url}")
    try:
        if http_client is not None:
            response = await http_client.get(url, timeout=timeout, follow_redirects=True)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=timeout, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise ArtifactRelocationError(f"Timed out fetching audio after {timeout:g}s") from exc
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise ArtifactRelocationError(f"Failed to fetch audio: {exc}") from exc

    if not response.is_success:
        raise ArtifactRelocationError(
            f"Failed to fetch audio: {response.status_code} {response.reason_phrase}"
        )
    if not response.content:
        raise ArtifactRelocationError("Failed to fetch audio: empty response body")
    logger.info(f"Audio downloaded, size: {len(response.content)} bytes")
    return response.content


_relocation_locks: dict[str, asyncio.Lock] = {}
_relocation_waiters: dict[str, int] = {}


@asynccontextmanager
async def relocation_lock(track_id: str) -> AsyncIterator[None]:
    """Serialize artifact relocation for one track within this process.

    Entries are reference counted and dropped once the last holder leaves.
    """
    lock = _relocation_locks.setdefault(track_id, asyncio.Lock())
    _relocation_waiters[track_id] = _relocation_waiters.get(track_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        remaining = _relocation_waiters[track_id] - 1
        if remaining:
            _relocation_waiters[track_id] = remaining
        else:
            del _relocation_waiters[track_id]
            del _relocation_locks[track_id]


def _stored_duration(track: Track) -> int:
    params = track.generation_params or {}
    duration = params.get("duration")
    if isinstance(duration, (int, float)) and duration > 0:
        return int(duration)
    return settings.default_track_duration_seconds


async def _complete_from_output(
    session: AsyncSession,
    track: Track,
    output: Any,
    *,
    store: S3ObjectStore,
    http_client: httpx.AsyncClient | None,
) -> WebhookOutcome:
    try:
        audio_url = extract_audio_url(output)
        audio = await download_artifact(audio_url, http_client)
        stored = await store.put_object(artifact_key(track.id), audio, ARTIFACT_CONTENT_TYPE)
    except (ArtifactRelocationError, StorageError) as exc:
        logger.error(f"❌ Failed to relocate audio for track {track.id}: {exc}")
        result = await track_repository.mark_failed(session, track.id, str(exc))
        return WebhookOutcome(
            outcome="failed" if result.applied else "ignored",
            message="Failed to process audio",
            track_id=track.id,
            transition=result,
            relocation_failed=result.applied,
        )

    result = await track_repository.mark_completed(
        session,
        track.id,
        file_url=stored.public_url,
        file_path=stored.key,
        duration=_stored_duration(track),
    )
    if not result.applied:
        # Lost a race with a concurrent callback for the same prediction.
        return WebhookOutcome("ignored", "Track already finalized", track.id, result)
    return WebhookOutcome("completed", "Track updated successfully", track.id, result)


async def relocate_once(
    session: AsyncSession,
    track_id: str,
    output: Any,
    *,
    store: S3ObjectStore,
    http_client: httpx.AsyncClient | None = None,
) -> WebhookOutcome:
    """Relocate a succeeded prediction's audio at most once per track.

    The status is re-read under the track's relocation lock (``FOR UPDATE``
    where the backend supports it) and the transition is committed before the
    lock is released, so an overlapping duplicate callback finds the track
    terminal and never downloads or uploads.
    """
    async with relocation_lock(track_id):
        track = await track_repository.get_track_for_update(session, track_id)
        if track is None:
            raise TrackNotFoundError(f"Track not found: {track_id}")
        if is_terminal(track.status):
            logger.info(f"Skipping relocation for track {track_id}: already {track.status}")
            return WebhookOutcome("ignored", f"Track already {track.status}", track_id)

        outcome = await _complete_from_output(
            session, track, output, store=store, http_client=http_client
        )
        await session.commit()
        return outcome


async def apply_prediction(
    session: AsyncSession,
    track: Track,
    *,
    status: str,
    output: Any = None,
    error: str | None = None,
    store: S3ObjectStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> WebhookOutcome:
    """Apply one observed prediction state to its track.

    Shared by the webhook and the manual status refresh so both paths obey
    the same transition table.
    """
    if is_terminal(track.status):
        logger.info(
            f"Ignoring '{status}' event for track {track.id}: already {track.status}"
        )
        return WebhookOutcome("ignored", f"Track already {track.status}", track.id)

    if status == SUCCEEDED:
        logger.info(f"Processing successful generation for track: {track.id}")
        return await relocate_once(
            session,
            track.id,
            output,
            store=store or get_object_store(),
            http_client=http_client,
        )

    if status in FAILURE_STATUSES:
        reason = error or f"Generation {status}"
        result = await track_repository.mark_failed(session, track.id, reason)
        outcome: WebhookOutcomeLiteral = "failed" if result.applied else "ignored"
        return WebhookOutcome(outcome, "Track marked as failed", track.id, result)

    if status in IN_PROGRESS_STATUSES:
        logger.info(f"Generation in progress for track: {track.id} status: {status}")
        await track_repository.touch_track(session, track.id)
        return WebhookOutcome("in_progress", "Status updated", track.id)

    logger.info(f"Unknown status received: {status!r} for track: {track.id}")
    return WebhookOutcome("noted", "Status noted", track.id)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def handle_replicate_webhook(
    session: AsyncSession,
    raw_body: bytes,
    signature: str | None,
    *,
    store: S3ObjectStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> WebhookOutcome:
    """Authenticate, parse, correlate and apply one Replicate callback."""
    verify_signature(raw_body, signature, settings.replicate_webhook_secret)
    payload = parse_payload(raw_body)

    prediction = Prediction.from_payload(payload)
    logger.info(
        f"Received Replicate webhook: id={prediction.id or '?'} status={prediction.status or '?'}"
    )
    if not prediction.id:
        raise WebhookValidationError("Missing prediction ID")

    track = await track_repository.get_track_by_prediction_id(session, prediction.id)
    if track is None:
        raise TrackNotFoundError(f"No track found for prediction ID: {prediction.id}")

    return await apply_prediction(
        session,
        track,
        status=prediction.status,
        output=prediction.output,
        error=prediction.error,
        store=store,
        http_client=http_client,
    )


async def refresh_track_status(
    session: AsyncSession,
    track_id: str,
    *,
    client: ReplicateClient | None = None,
    store: S3ObjectStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> WebhookOutcome:
    """Read a track's prediction straight from Replicate and apply it.

    Fallback for missed callbacks.  Raises TrackNotFoundError for an unknown
    track, PredictionNotSubmittedError before the submission has been
    accepted, and ReplicateError when Replicate cannot be read.
    """
    track = await track_repository.get_track(session, track_id)
    if track is None:
        raise TrackNotFoundError(f"Track not found: {track_id}")
    if is_terminal(track.status):
        return WebhookOutcome("ignored", f"Track already {track.status}", track.id)
    if not track.prediction_id:
        raise PredictionNotSubmittedError(f"Track {track_id} has no prediction yet")

    prediction = await (client or get_replicate_client()).get_prediction(track.prediction_id)
    return await apply_prediction(
        session,
        track,
        status=prediction.status,
        output=prediction.output,
        error=prediction.error,
        store=store,
        http_client=http_client,
    )
