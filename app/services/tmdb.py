"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import MetadataUnavailable
from ..models import ContentDetails, MediaType

logger = logging.getLogger(__name__)

DEFAULT_POSTER_SIZE = "w500"


class MetadataGateway(Protocol):
    """What the watchlist and note services need from a metadata provider."""

    async def get_details(
        self, content_id: int, media_type: MediaType = "movie"
    ) -> ContentDetails: ...

    def image_url(self, path: str | None, size: str = DEFAULT_POSTER_SIZE) -> str | None: ...


@dataclass(slots=True)
class DiscoverResult:
    """Normalized view of a TMDB discover result."""

    tmdb_id: int
    title: str
    media_type: MediaType
    poster_path: str | None
    release_date: str | None
    average_rating: float | None
    genre_ids: list[int]


class TMDBClient:
    """Client responsible for TMDB detail lookups and discovery queries."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._image_base_url = str(settings.tmdb_image_base_url).rstrip("/")
        self._semaphore = asyncio.Semaphore(settings.metadata_concurrency)

    def _params(self, **extra: Any) -> dict[str, Any]:
        params: dict[str, Any] = {"language": "en-US"}
        if self._settings.tmdb_api_key:
            params["api_key"] = self._settings.tmdb_api_key
        params.update(extra)
        return params

    async def get_details(
        self, content_id: int, media_type: MediaType = "movie"
    ) -> ContentDetails:
        """Return display metadata for a movie or show."""

        endpoint = f"/{'tv' if media_type == 'tv' else 'movie'}/{content_id}"
        params = self._params(append_to_response="credits")
        try:
            async with self._semaphore:
                response = await self._client.get(endpoint, params=params)
        except httpx.HTTPError as exc:
            logger.warning("TMDB detail lookup for %s failed: %s", content_id, exc)
            raise MetadataUnavailable(content_id, str(exc)) from exc

        if response.status_code >= 400:
            logger.warning(
                "TMDB detail lookup for %s (%s) failed: %s",
                content_id,
                media_type,
                response.status_code,
            )
            raise MetadataUnavailable(content_id, f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise MetadataUnavailable(content_id, "non-JSON response") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), int):
            raise MetadataUnavailable(content_id, "unexpected response structure")
        return self._to_details(payload, media_type)

    async def discover(
        self, endpoint: str, params: dict[str, str], *, page: int = 1
    ) -> list[DiscoverResult]:
        """Run a discovery query and normalize movie/show results."""

        media_type: MediaType = "tv" if endpoint.rstrip("/").endswith("tv") else "movie"
        response = await self._client.get(
            f"/{endpoint.lstrip('/')}", params=self._params(page=page, **params)
        )
        if response.status_code >= 400:
            logger.warning("TMDB discover %s failed: %s", endpoint, response.text)
            return []
        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON TMDB discover response for %s", endpoint)
            return []
        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            return []

        normalized: list[DiscoverResult] = []
        for entry in results:
            if not isinstance(entry, dict) or not isinstance(entry.get("id"), int):
                continue
            normalized.append(
                DiscoverResult(
                    tmdb_id=entry["id"],
                    title=str(entry.get("title") or entry.get("name") or ""),
                    media_type=media_type,
                    poster_path=entry.get("poster_path"),
                    release_date=entry.get("release_date") or entry.get("first_air_date"),
                    average_rating=self._coerce_float(entry.get("vote_average")),
                    genre_ids=[
                        value
                        for value in entry.get("genre_ids") or []
                        if isinstance(value, int)
                    ],
                )
            )
        return normalized

    def image_url(
        self, path: str | None, size: str = DEFAULT_POSTER_SIZE
    ) -> str | None:
        if not path:
            return None
        if path.startswith("http"):
            return path
        return f"{self._image_base_url}/{size}{path}"

    @classmethod
    def _to_details(cls, payload: dict[str, Any], media_type: MediaType) -> ContentDetails:
        genres = [
            str(genre.get("name"))
            for genre in payload.get("genres") or []
            if isinstance(genre, dict) and genre.get("name")
        ]
        credits = payload.get("credits") if isinstance(payload.get("credits"), dict) else {}
        cast = [
            str(member.get("name"))
            for member in (credits.get("cast") or [])[:10]
            if isinstance(member, dict) and member.get("name")
        ]
        runtime = payload.get("runtime")
        if runtime is None and media_type == "tv":
            episode_runtimes = payload.get("episode_run_time") or []
            runtime = episode_runtimes[0] if episode_runtimes else None
        return ContentDetails(
            id=payload["id"],
            media_type=media_type,
            title=str(
                payload.get("title")
                or payload.get("name")
                or f"Movie #{payload['id']}"
            ),
            release_date=payload.get("release_date") or payload.get("first_air_date"),
            poster_path=payload.get("poster_path"),
            average_rating=cls._coerce_float(payload.get("vote_average")),
            genres=genres,
            runtime_minutes=runtime if isinstance(runtime, int) else None,
            language=payload.get("original_language"),
            adult=bool(payload.get("adult")),
            cast=cast,
        )

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return float(value)
        return None
