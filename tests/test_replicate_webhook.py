"""Tests for melodymaker.services.replicate_webhook.

Covers signature verification, payload parsing, artifact relocation and the
per-status transition table, including replays of terminal events.
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from melodymaker.config import settings
from melodymaker.db.database import Base
from melodymaker.db.models import Track, TrackUpdate
from melodymaker.services import replicate_webhook, track_repository
from melodymaker.services.errors import (
    ArtifactRelocationError,
    PredictionNotSubmittedError,
    StorageError,
    TrackNotFoundError,
    WebhookAuthenticationError,
    WebhookValidationError,
)
from melodymaker.services.replicate import Prediction
from melodymaker.services.replicate_webhook import (
    artifact_key,
    download_artifact,
    extract_audio_url,
    handle_replicate_webhook,
    parse_payload,
    refresh_track_status,
    sign_payload,
    verify_signature,
)

AUDIO_URL = "https://replicate.delivery/pbxt/abc/out.mp3"
AUDIO_BYTES = b"ID3\x03\x00fake-mp3-bytes"


def _audio_client(
    handler: Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]] | None = None,
) -> httpx.AsyncClient:
    def default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=AUDIO_BYTES)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler or default))


def _body(**payload: Any) -> bytes:
    return json.dumps(payload).encode()


async def _track_with_prediction(
    session: AsyncSession,
    prediction_id: str = "pred-1",
    generation_params: dict[str, Any] | None = None,
) -> Track:
    track = await track_repository.create_track(
        session,
        title="Soulful Rainy Cafe",
        description="lofi beat",
        selected_songs=[],
        generation_params=generation_params
        if generation_params is not None
        else {"prompt": "lofi beat", "duration": 10},
        genres=[],
        tempo=120,
        energy=0.5,
        valence=0.5,
    )
    await track_repository.set_prediction_id(session, track.id, prediction_id)
    await session.commit()
    return track


async def _update_count(session: AsyncSession, track_id: str) -> int:
    stmt = select(func.count()).select_from(TrackUpdate).where(TrackUpdate.track_id == track_id)
    return (await session.execute(stmt)).scalar_one()


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


class TestVerifySignature:

    SECRET = "whsec-test"
    BODY = b'{"id":"pred-1","status":"succeeded"}'

    def test_valid_signature_accepted(self) -> None:
        verify_signature(self.BODY, sign_payload(self.SECRET, self.BODY), self.SECRET)

    def test_valid_signature_without_prefix_accepted(self) -> None:
        bare = sign_payload(self.SECRET, self.BODY).removeprefix("sha256=")
        verify_signature(self.BODY, bare, self.SECRET)

    @pytest.mark.parametrize("index", [0, 5, 17, -1])
    def test_flipped_body_byte_rejected(self, index: int) -> None:
        signature = sign_payload(self.SECRET, self.BODY)
        tampered = bytearray(self.BODY)
        tampered[index] ^= 0x01
        with pytest.raises(WebhookAuthenticationError):
            verify_signature(bytes(tampered), signature, self.SECRET)

    @pytest.mark.parametrize("index", [7, 20, -1])
    def test_flipped_signature_char_rejected(self, index: int) -> None:
        signature = list(sign_payload(self.SECRET, self.BODY))
        signature[index] = "0" if signature[index] != "0" else "1"
        with pytest.raises(WebhookAuthenticationError):
            verify_signature(self.BODY, "".join(signature), self.SECRET)

    @pytest.mark.parametrize("missing", [None, ""])
    def test_missing_signature_rejected_when_secret_set(self, missing: str | None) -> None:
        with pytest.raises(WebhookAuthenticationError):
            verify_signature(self.BODY, missing, self.SECRET)

    def test_no_secret_skips_verification(self) -> None:
        verify_signature(self.BODY, None, None)
        verify_signature(self.BODY, "sha256=garbage", "")

    def test_non_ascii_signature_rejected(self) -> None:
        with pytest.raises(WebhookAuthenticationError):
            verify_signature(self.BODY, "sha256=ünïcode", self.SECRET)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParsing:

    def test_parse_payload_rejects_malformed_json(self) -> None:
        with pytest.raises(WebhookValidationError):
            parse_payload(b"{not json")

    def test_parse_payload_rejects_non_object(self) -> None:
        with pytest.raises(WebhookValidationError):
            parse_payload(b'["a", "b"]')

    def test_extract_audio_url_from_string(self) -> None:
        assert extract_audio_url(AUDIO_URL) == AUDIO_URL

    def test_extract_audio_url_from_list_uses_first(self) -> None:
        assert extract_audio_url([AUDIO_URL, "https://other"]) == AUDIO_URL

    @pytest.mark.parametrize(
        "output",
        [None, [], "", {"audio": AUDIO_URL}, [42], "http://[::1", "ftp://host/out.mp3", "out.mp3"],
    )
    def test_extract_audio_url_rejects_other_shapes(self, output: Any) -> None:
        with pytest.raises(ArtifactRelocationError):
            extract_audio_url(output)

    def test_artifact_key_combines_track_id_and_timestamp(self) -> None:
        assert artifact_key("track-1", now_ms=1700000000123) == "track-1_1700000000123.mp3"


class TestDownloadArtifact:

    @pytest.mark.anyio
    async def test_success_returns_bytes(self) -> None:
        async with _audio_client() as http:
            assert await download_artifact(AUDIO_URL, http) == AUDIO_BYTES

    @pytest.mark.anyio
    async def test_non_2xx_raises(self) -> None:
        async with _audio_client(lambda r: httpx.Response(404)) as http:
            with pytest.raises(ArtifactRelocationError, match="404"):
                await download_artifact(AUDIO_URL, http)

    @pytest.mark.anyio
    async def test_timeout_raises(self) -> None:
        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with _audio_client(slow) as http:
            with pytest.raises(ArtifactRelocationError, match="Timed out"):
                await download_artifact(AUDIO_URL, http)

    @pytest.mark.anyio
    async def test_unparseable_url_raises(self) -> None:
        async with _audio_client() as http:
            with pytest.raises(ArtifactRelocationError, match="Failed to fetch audio"):
                await download_artifact("http://[::1", http)

    @pytest.mark.anyio
    async def test_download_uses_configured_timeout(self) -> None:
        http = MagicMock()
        http.get = AsyncMock(return_value=httpx.Response(200, content=AUDIO_BYTES))
        await download_artifact(AUDIO_URL, http)
        assert http.get.call_args.kwargs["timeout"] == settings.artifact_download_timeout == 30.0


# ---------------------------------------------------------------------------
# handle_replicate_webhook: scenarios
# ---------------------------------------------------------------------------


class TestHandleWebhook:

    @pytest.mark.anyio
    async def test_succeeded_relocates_and_completes(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        async with _audio_client() as http:
            outcome = await handle_replicate_webhook(
                db_session,
                _body(id="pred-1", status="succeeded", output=AUDIO_URL),
                None,
                http_client=http,
            )
        await db_session.commit()

        assert outcome.outcome == "completed"
        assert outcome.transition is not None and outcome.transition.applied
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.status == "completed"
        assert refreshed.duration == 10
        assert refreshed.file_path is not None
        assert refreshed.file_path.startswith(f"{track.id}_")
        assert refreshed.file_path.endswith(".mp3")
        assert refreshed.file_url == object_store.public_url(refreshed.file_path)
        assert object_store.objects[refreshed.file_path] == (AUDIO_BYTES, "audio/mpeg")

    @pytest.mark.anyio
    async def test_succeeded_with_list_output(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        await _track_with_prediction(db_session)
        async with _audio_client() as http:
            outcome = await handle_replicate_webhook(
                db_session,
                _body(id="pred-1", status="succeeded", output=[AUDIO_URL]),
                None,
                http_client=http,
            )
        assert outcome.outcome == "completed"

    @pytest.mark.anyio
    async def test_duration_falls_back_to_default(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session, generation_params={"prompt": "x"})
        async with _audio_client() as http:
            await handle_replicate_webhook(
                db_session, _body(id="pred-1", status="succeeded", output=AUDIO_URL), None,
                http_client=http,
            )
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.duration == settings.default_track_duration_seconds

    @pytest.mark.anyio
    async def test_failed_stores_provider_reason(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        outcome = await handle_replicate_webhook(
            db_session,
            _body(id="pred-1", status="failed", error="NSFW content detected"),
            None,
        )
        await db_session.commit()

        assert outcome.outcome == "failed"
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.status == "failed"
        assert refreshed.error_message == "NSFW content detected"

    @pytest.mark.anyio
    async def test_canceled_synthesizes_reason(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        await handle_replicate_webhook(db_session, _body(id="pred-1", status="canceled"), None)
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.error_message == "Generation canceled"

    @pytest.mark.anyio
    async def test_unknown_prediction_not_found_and_no_updates(
        self, db_session: AsyncSession
    ) -> None:
        track = await _track_with_prediction(db_session)
        with pytest.raises(TrackNotFoundError):
            await handle_replicate_webhook(
                db_session, _body(id="pred-unknown", status="succeeded", output=AUDIO_URL), None
            )
        assert await _update_count(db_session, track.id) == 0

    @pytest.mark.anyio
    async def test_tampered_signature_leaves_track_unchanged(
        self, db_session: AsyncSession
    ) -> None:
        track = await _track_with_prediction(db_session)
        body = _body(id="pred-1", status="failed", error="x")
        bad_signature = sign_payload("whsec-test", body + b" ")
        with patch.object(settings, "replicate_webhook_secret", "whsec-test"):
            with pytest.raises(WebhookAuthenticationError):
                await handle_replicate_webhook(db_session, body, bad_signature)

        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.status == "generating"

    @pytest.mark.anyio
    async def test_valid_signature_accepted(self, db_session: AsyncSession) -> None:
        await _track_with_prediction(db_session)
        body = _body(id="pred-1", status="processing")
        with patch.object(settings, "replicate_webhook_secret", "whsec-test"):
            outcome = await handle_replicate_webhook(
                db_session, body, sign_payload("whsec-test", body)
            )
        assert outcome.outcome == "in_progress"

    @pytest.mark.anyio
    async def test_missing_prediction_id_rejected(self, db_session: AsyncSession) -> None:
        with pytest.raises(WebhookValidationError):
            await handle_replicate_webhook(db_session, _body(status="succeeded"), None)

    @pytest.mark.anyio
    async def test_processing_touches_without_update(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        outcome = await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="processing"), None
        )
        await db_session.commit()
        assert outcome.outcome == "in_progress"
        assert outcome.transition is None
        assert await _update_count(db_session, track.id) == 0

    @pytest.mark.anyio
    async def test_unknown_status_noted_without_mutation(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        outcome = await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="queued-somewhere"), None
        )
        assert outcome.outcome == "noted"
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.status == "generating"


class TestRelocationFailure:

    @pytest.mark.anyio
    async def test_download_error_fails_track(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        async with _audio_client(lambda r: httpx.Response(500)) as http:
            outcome = await handle_replicate_webhook(
                db_session, _body(id="pred-1", status="succeeded", output=AUDIO_URL), None,
                http_client=http,
            )
        await db_session.commit()

        assert outcome.outcome == "failed"
        assert outcome.relocation_failed
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.status == "failed"
        assert "500" in (refreshed.error_message or "")
        assert object_store.objects == {}

    @pytest.mark.anyio
    async def test_storage_error_fails_track(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        object_store.fail_with = StorageError("MELODY_AWS_S3_MUSIC_BUCKET is not set")
        track = await _track_with_prediction(db_session)
        async with _audio_client() as http:
            outcome = await handle_replicate_webhook(
                db_session, _body(id="pred-1", status="succeeded", output=AUDIO_URL), None,
                http_client=http,
            )
        assert outcome.relocation_failed
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.error_message == "MELODY_AWS_S3_MUSIC_BUCKET is not set"

    @pytest.mark.anyio
    async def test_succeeded_without_output_fails_track(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        outcome = await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="succeeded", output=None), None
        )
        assert outcome.outcome == "failed"
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.status == "failed"

    @pytest.mark.anyio
    async def test_unparseable_output_url_fails_track(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, content=AUDIO_BYTES)

        async with _audio_client(handler) as http:
            outcome = await handle_replicate_webhook(
                db_session, _body(id="pred-1", status="succeeded", output="http://[::1"), None,
                http_client=http,
            )

        assert outcome.outcome == "failed"
        assert outcome.relocation_failed
        assert calls == []
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None
        assert refreshed.status == "failed"
        assert "Invalid audio URL" in (refreshed.error_message or "")
        assert object_store.objects == {}
        assert await _update_count(db_session, track.id) == 1


class TestIdempotence:

    @pytest.mark.anyio
    async def test_replayed_success_downloads_once_and_writes_one_update(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, content=AUDIO_BYTES)

        body = _body(id="pred-1", status="succeeded", output=AUDIO_URL)
        async with _audio_client(handler) as http:
            first = await handle_replicate_webhook(db_session, body, None, http_client=http)
            await db_session.commit()
            after_first = await track_repository.get_track(db_session, track.id)
            assert after_first is not None
            file_url = after_first.file_url

            second = await handle_replicate_webhook(db_session, body, None, http_client=http)
            await db_session.commit()

        assert first.outcome == "completed"
        assert second.outcome == "ignored"
        assert len(calls) == 1
        assert len(object_store.objects) == 1
        assert await _update_count(db_session, track.id) == 1
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.file_url == file_url

    @pytest.mark.anyio
    async def test_late_processing_after_completion_ignored(
        self, db_session: AsyncSession, object_store: Any
    ) -> None:
        track = await _track_with_prediction(db_session)
        async with _audio_client() as http:
            await handle_replicate_webhook(
                db_session, _body(id="pred-1", status="succeeded", output=AUDIO_URL), None,
                http_client=http,
            )
        await db_session.commit()

        outcome = await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="processing"), None
        )
        assert outcome.outcome == "ignored"
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.status == "completed"

    @pytest.mark.anyio
    async def test_failure_after_failure_keeps_first_reason(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="failed", error="first"), None
        )
        await db_session.commit()
        second = await handle_replicate_webhook(
            db_session, _body(id="pred-1", status="failed", error="second"), None
        )
        assert second.outcome == "ignored"
        refreshed = await track_repository.get_track(db_session, track.id)
        assert refreshed is not None and refreshed.error_message == "first"
        assert await _update_count(db_session, track.id) == 1


@pytest_asyncio.fixture
async def file_sessions(tmp_path: Any) -> Any:
    """Session factory over a file-backed SQLite DB, one connection per session."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tracks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


class TestConcurrentDelivery:

    @pytest.mark.anyio
    async def test_overlapping_success_callbacks_relocate_once(
        self, file_sessions: Any, object_store: Any
    ) -> None:
        async with file_sessions() as session:
            track = await _track_with_prediction(session)
        calls: list[str] = []

        async def slow_download(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            await asyncio.sleep(0.05)
            return httpx.Response(200, content=AUDIO_BYTES)

        body = _body(id="pred-1", status="succeeded", output=AUDIO_URL)

        async def deliver(http: httpx.AsyncClient) -> Any:
            async with file_sessions() as session:
                outcome = await handle_replicate_webhook(session, body, None, http_client=http)
                await session.commit()
                return outcome

        async with _audio_client(slow_download) as http:
            outcomes = await asyncio.gather(deliver(http), deliver(http))

        assert sorted(o.outcome for o in outcomes) == ["completed", "ignored"]
        assert len(calls) == 1
        assert len(object_store.objects) == 1
        async with file_sessions() as session:
            refreshed = await track_repository.get_track(session, track.id)
            assert refreshed is not None and refreshed.status == "completed"
            assert refreshed.file_path in object_store.objects
            assert await _update_count(session, track.id) == 1
        assert replicate_webhook._relocation_locks == {}


# ---------------------------------------------------------------------------
# refresh_track_status
# ---------------------------------------------------------------------------


class TestRefreshTrackStatus:

    @pytest.mark.anyio
    async def test_refresh_applies_remote_failure(self, db_session: AsyncSession) -> None:
        track = await _track_with_prediction(db_session)
        client = MagicMock()
        client.get_prediction = AsyncMock(
            return_value=Prediction(id="pred-1", status="failed", error="CUDA out of memory")
        )
        outcome = await refresh_track_status(db_session, track.id, client=client)
        assert outcome.outcome == "failed"
        client.get_prediction.assert_awaited_once_with("pred-1")

    @pytest.mark.anyio
    async def test_refresh_unknown_track(self, db_session: AsyncSession) -> None:
        with pytest.raises(TrackNotFoundError):
            await refresh_track_status(db_session, "missing", client=MagicMock())

    @pytest.mark.anyio
    async def test_refresh_before_submission(self, db_session: AsyncSession) -> None:
        track = await track_repository.create_track(
            db_session, title="t", description="d", selected_songs=[],
            generation_params={}, genres=[], tempo=120, energy=0.5, valence=0.5,
        )
        await db_session.commit()
        with pytest.raises(PredictionNotSubmittedError):
            await refresh_track_status(db_session, track.id, client=MagicMock())

    @pytest.mark.anyio
    async def test_refresh_terminal_track_does_not_call_replicate(
        self, db_session: AsyncSession
    ) -> None:
        track = await _track_with_prediction(db_session)
        await track_repository.mark_failed(db_session, track.id, "x")
        await db_session.commit()
        client = MagicMock()
        client.get_prediction = AsyncMock()
        outcome = await refresh_track_status(db_session, track.id, client=client)
        assert outcome.outcome == "ignored"
        client.get_prediction.assert_not_awaited()


def test_module_exposes_signature_header() -> None:
    assert replicate_webhook.SIGNATURE_HEADER == "Replicate-Signature"
