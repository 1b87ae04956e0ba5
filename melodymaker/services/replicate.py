"""Replicate client (compute provider).

Submits MusicGen predictions and reads their state back.  Generation is
webhook-driven: ``create_prediction`` returns as soon as Replicate accepts the
job, and Replicate later POSTs status events to the callback URL.

Uses a long-lived httpx.AsyncClient so the TCP/TLS handshake cost is paid
once per worker process rather than on every submission.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from melodymaker.config import settings
from melodymaker.services.errors import ReplicateError

logger = logging.getLogger(__name__)

# Replicate sends a callback for each of these prediction events.
WEBHOOK_EVENTS_FILTER: list[str] = ["start", "output", "logs", "completed"]

_CONNECTION_LIMITS = httpx.Limits(
    max_connections=20,
    max_keepalive_connections=10,
    keepalive_expiry=30.0,
)


@dataclass(frozen=True)
class Prediction:
    """The subset of a Replicate prediction object this service reads."""

    id: str
    status: str
    output: Any = None
    error: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Prediction":
        error = data.get("error")
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            output=data.get("output"),
            error=str(error) if error else None,
            raw=data,
        )


def _error_detail(response: httpx.Response) -> str:
    """Extract Replicate's error text from a non-2xx response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:300] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("title") or data.get("error")
        if detail:
            return str(detail)
    return f"HTTP {response.status_code}"


class ReplicateClient:
    """
    Async client for the Replicate predictions API.

    Every failure (missing token, transport error, non-2xx) is raised as
    ``ReplicateError`` carrying Replicate's own message so callers can
    classify it for users.
    """

    def __init__(
        self,
        api_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token if api_token is not None else settings.replicate_api_token
        self.base_url = (base_url or settings.replicate_base_url).rstrip("/")
        self.timeout = timeout or settings.replicate_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=5.0,
                    read=float(self.timeout),
                    write=10.0,
                    pool=5.0,
                ),
                limits=_CONNECTION_LIMITS,
                transport=self._transport,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        if not self.api_token:
            raise ReplicateError("Replicate API token is not configured")
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> bool:
        """True when a token is configured and Replicate answers the account endpoint."""
        if not self.api_token:
            return False
        probe_timeout = httpx.Timeout(connect=3.0, read=3.0, write=3.0, pool=3.0)
        try:
            response = await self.client.get(
                f"{self.base_url}/account",
                headers=self._headers(),
                timeout=probe_timeout,
            )
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Replicate health check failed: {e}")
            return False

    async def create_prediction(
        self,
        *,
        prompt: str,
        duration: int,
        webhook_url: str,
    ) -> Prediction:
        """Submit a MusicGen prediction that reports back via ``webhook_url``."""
        payload: dict[str, Any] = {
            "version": settings.replicate_model_version,
            "input": {
                "prompt": prompt,
                "model_version": settings.replicate_model_variant,
                "output_format": "mp3",
                "normalization_strategy": "peak",
                "top_k": 250,
                "top_p": 0.0,
                "temperature": 1.0,
                "classifier_free_guidance": 3.0,
                "duration": duration,
            },
            "webhook": webhook_url,
            "webhook_events_filter": WEBHOOK_EVENTS_FILTER,
        }

        logger.info(f"Submitting prediction ({duration}s) with webhook {webhook_url}")
        try:
            response = await self.client.post(
                f"{self.base_url}/predictions",
                json=payload,
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise ReplicateError(f"Replicate request failed: {exc}") from exc

        if not response.is_success:
            detail = _error_detail(response)
            logger.error(f"❌ Replicate rejected prediction ({response.status_code}): {detail}")
            raise ReplicateError(detail, status_code=response.status_code)

        data = response.json()
        if not isinstance(data, dict) or not data.get("id"):
            raise ReplicateError(f"Invalid prediction response: {response.text[:200]}")

        prediction = Prediction.from_payload(data)
        logger.info(f"📥 Prediction {prediction.id} created ({prediction.status})")
        return prediction

    async def get_prediction(self, prediction_id: str) -> Prediction:
        """Fetch the current state of a prediction."""
        try:
            response = await self.client.get(
                f"{self.base_url}/predictions/{prediction_id}",
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise ReplicateError(f"Replicate request failed: {exc}") from exc

        if not response.is_success:
            raise ReplicateError(_error_detail(response), status_code=response.status_code)

        data = response.json()
        if not isinstance(data, dict):
            raise ReplicateError(f"Invalid prediction response: {response.text[:200]}")
        return Prediction.from_payload(data)


_replicate_client: Optional[ReplicateClient] = None


def get_replicate_client() -> ReplicateClient:
    """Return the process-wide ReplicateClient, creating it on first use."""
    global _replicate_client
    if _replicate_client is None:
        _replicate_client = ReplicateClient()
    return _replicate_client


async def close_replicate_client() -> None:
    """Close and forget the process-wide client (application shutdown)."""
    global _replicate_client
    if _replicate_client is not None:
        await _replicate_client.close()
        _replicate_client = None
