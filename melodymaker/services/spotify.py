"""Spotify client (reference-track search provider).

Client-credentials flow: one bearer token per client, cached until shortly
before it expires.  Search results are the lightweight ``ReferenceTrack``
shape; ``track_details`` enriches one track with audio features and artist
genres, both of which are optional and degrade to None / [] when Spotify
withholds them (audio features are restricted for many apps).
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from melodymaker.config import settings
from melodymaker.models.tracks import AudioFeatures, ReferenceTrack
from melodymaker.services.errors import SpotifyError

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2
DEFAULT_SEARCH_LIMIT = 8
MAX_ARTIST_GENRES = 5

# Refresh the bearer token this long before Spotify says it expires.
TOKEN_REFRESH_MARGIN_SECONDS = 60


@dataclass
class SpotifyTokenCache:
    """A bearer token and the monotonic time after which it must be refreshed."""

    token: Optional[str] = None
    expires_at: float = 0.0

    def valid(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return bool(self.token) and current < self.expires_at

    def store(self, token: str, expires_in: float, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        self.token = token
        self.expires_at = current + max(0.0, expires_in - TOKEN_REFRESH_MARGIN_SECONDS)


def _album_image(album: dict[str, Any]) -> Optional[str]:
    """Prefer the smallest (third) album image, falling back to the first."""
    images = album.get("images") or []
    for index in (2, 0):
        if len(images) > index and images[index].get("url"):
            return images[index]["url"]
    return None


def _summarize(item: dict[str, Any]) -> dict[str, Any]:
    artists = item.get("artists") or []
    album = item.get("album") or {}
    return {
        "id": item["id"],
        "name": item.get("name") or "",
        "artist": (artists[0].get("name") if artists else None) or "Unknown Artist",
        "album": album.get("name") or "",
        "image": _album_image(album),
        "preview_url": item.get("preview_url"),
        "external_url": (item.get("external_urls") or {}).get("spotify"),
    }


def _audio_features(data: dict[str, Any]) -> Optional[AudioFeatures]:
    if not isinstance(data, dict) or data.get("danceability") is None:
        return None

    def num(name: str, default: float) -> Any:
        value = data.get(name)
        return default if value is None else value

    return AudioFeatures(
        danceability=num("danceability", 0.0),
        energy=num("energy", 0.0),
        valence=num("valence", 0.0),
        tempo=round(num("tempo", 120.0)) or 120,
        key=num("key", 0),
        mode=num("mode", 1),
        time_signature=num("time_signature", 4),
        acousticness=num("acousticness", 0.0),
        instrumentalness=num("instrumentalness", 0.0),
        speechiness=num("speechiness", 0.0),
    )


class SpotifyClient:
    """Async Spotify Web API client using the client-credentials grant."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_base_url: Optional[str] = None,
        accounts_url: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.spotify_client_id
        self.client_secret = (
            client_secret if client_secret is not None else settings.spotify_client_secret
        )
        self.api_base_url = (api_base_url or settings.spotify_api_base_url).rstrip("/")
        self.accounts_url = accounts_url or settings.spotify_accounts_url
        self.timeout = timeout or settings.spotify_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token = SpotifyTokenCache()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(float(self.timeout), connect=5.0),
                transport=self._transport,
            )
        return self._client

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _access_token(self) -> str:
        if self._token.valid():
            return self._token.token or ""
        if not self.configured:
            raise SpotifyError("Spotify credentials are not configured")

        try:
            response = await self.client.post(
                self.accounts_url,
                data={"grant_type": "client_credentials"},
                auth=(self.client_id or "", self.client_secret or ""),
            )
        except httpx.HTTPError as exc:
            raise SpotifyError(f"Failed to get Spotify access token: {exc}") from exc
        if not response.is_success:
            raise SpotifyError(
                "Failed to get Spotify access token", status_code=response.status_code
            )

        data = response.json()
        self._token.store(data["access_token"], float(data.get("expires_in", 3600)))
        logger.debug("Spotify access token refreshed")
        return data["access_token"]

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        token = await self._access_token()
        try:
            return await self.client.get(
                f"{self.api_base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise SpotifyError(f"Spotify request failed: {exc}") from exc

    async def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[ReferenceTrack]:
        """Search tracks; queries shorter than two characters return nothing."""
        query = query.strip()
        if len(query) < MIN_QUERY_LENGTH:
            return []

        response = await self._get("/search", {"q": query, "type": "track", "limit": limit})
        if not response.is_success:
            raise SpotifyError("Spotify API request failed", status_code=response.status_code)

        items = (response.json().get("tracks") or {}).get("items") or []
        return [ReferenceTrack.model_validate(_summarize(item)) for item in items if item]

    async def track_details(self, track_id: str) -> ReferenceTrack:
        """Full summary for one track, with optional audio features and genres."""
        response = await self._get(f"/tracks/{track_id}")
        if not response.is_success:
            logger.error(
                f"Track fetch failed: {response.status_code} {response.reason_phrase}"
            )
            raise SpotifyError(
                "Failed to fetch track details", status_code=response.status_code
            )

        item = response.json()
        summary = _summarize(item)
        summary["popularity"] = item.get("popularity")
        summary["duration_ms"] = item.get("duration_ms")
        summary["audio_features"] = await self._optional_features(track_id)
        artists = item.get("artists") or []
        artist_id = artists[0].get("id") if artists else None
        summary["genres"] = await self._optional_genres(artist_id) if artist_id else []
        return ReferenceTrack.model_validate(summary)

    async def _optional_features(self, track_id: str) -> Optional[AudioFeatures]:
        try:
            response = await self._get(f"/audio-features/{track_id}")
            if response.is_success:
                return _audio_features(response.json())
            logger.info(f"Audio features unavailable for {track_id}: {response.status_code}")
        except (SpotifyError, ValueError) as exc:
            logger.warning(f"⚠️ Failed to fetch audio features: {exc}")
        return None

    async def _optional_genres(self, artist_id: str) -> list[str]:
        try:
            response = await self._get(f"/artists/{artist_id}")
            if response.is_success:
                genres = response.json().get("genres") or []
                return [str(g) for g in genres[:MAX_ARTIST_GENRES]]
        except (SpotifyError, ValueError) as exc:
            logger.warning(f"⚠️ Failed to fetch artist details: {exc}")
        return []


_spotify_client: Optional[SpotifyClient] = None


def get_spotify_client() -> SpotifyClient:
    global _spotify_client
    if _spotify_client is None:
        _spotify_client = SpotifyClient()
    return _spotify_client


async def close_spotify_client() -> None:
    global _spotify_client
    if _spotify_client is not None:
        await _spotify_client.close()
        _spotify_client = None
