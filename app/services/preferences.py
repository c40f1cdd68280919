"""Discovery preferences: tolerant decoding, year clamping and query compilation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from ..cache import LEGACY_GENRE_BUCKET, PREFERENCE_BUCKET, LocalCache, cache_key
from ..models import DEFAULT_MEDIA_TYPE, MediaType, PreferenceRecord
from ..utils import clamp_year

logger = logging.getLogger(__name__)

_DATE_PARAMS: dict[str, tuple[str, str]] = {
    "movie": ("primary_release_date.gte", "primary_release_date.lte"),
    "tv": ("first_air_date.gte", "first_air_date.lte"),
}


def _genre_ids(values: list[Any]) -> list[int]:
    return [value for value in values if isinstance(value, int) and not isinstance(value, bool)]


def _decode_structured(parsed: Any) -> PreferenceRecord | None:
    if not isinstance(parsed, dict):
        return None
    media_type = parsed.get("mediaType", parsed.get("media_type"))
    genres = parsed.get("genreIds", parsed.get("genre_ids"))
    year_from = parsed.get("yearFrom", parsed.get("year_from"))
    year_to = parsed.get("yearTo", parsed.get("year_to"))
    return PreferenceRecord(
        media_type=media_type if media_type in _DATE_PARAMS else DEFAULT_MEDIA_TYPE,
        genre_ids=_genre_ids(genres) if isinstance(genres, list) else [],
        year_from=clamp_year(year_from) if _is_number(year_from) else None,
        year_to=clamp_year(year_to) if _is_number(year_to) else None,
    )


def _decode_genre_array(parsed: Any) -> PreferenceRecord | None:
    # Older builds stored only the selected genre ids.
    if not isinstance(parsed, list):
        return None
    return PreferenceRecord(genre_ids=_genre_ids(parsed))


_PREFERENCE_DECODERS: tuple[Callable[[Any], PreferenceRecord | None], ...] = (
    _decode_structured,
    _decode_genre_array,
)


def decode_preferences(raw: Any) -> PreferenceRecord:
    """Decode stored preferences, falling back to defaults for unknown shapes.

    ``raw`` may be the JSON text read from the cache or an already parsed
    value. Shapes are tried in order: structured object, bare genre array,
    then full defaults.
    """

    parsed = raw
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring unparseable stored preferences")
            return PreferenceRecord()
    for decoder in _PREFERENCE_DECODERS:
        decoded = decoder(parsed)
        if decoded is not None:
            return decoded
    return PreferenceRecord()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(slots=True)
class DiscoveryQuery:
    """Endpoint and parameters for a provider discovery request."""

    endpoint: str
    media_type: MediaType
    params: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "mediaType": self.media_type,
            "params": dict(self.params),
        }


def compile_discovery_query(pref: PreferenceRecord) -> DiscoveryQuery:
    """Translate preferences into discovery parameters; never fails."""

    media_type: MediaType = pref.media_type if pref.media_type in _DATE_PARAMS else DEFAULT_MEDIA_TYPE
    params: dict[str, str] = {"sort_by": "popularity.desc"}
    if pref.genre_ids:
        params["with_genres"] = ",".join(str(genre) for genre in pref.genre_ids)

    gte_param, lte_param = _DATE_PARAMS[media_type]
    if pref.year_from is not None:
        params[gte_param] = f"{pref.year_from}-01-01"
    if pref.year_to is not None:
        params[lte_param] = f"{pref.year_to}-12-31"

    return DiscoveryQuery(
        endpoint=f"discover/{media_type}",
        media_type=media_type,
        params=params,
    )


class PreferenceStore:
    """Reads and writes an owner's preferences in the local cache."""

    def __init__(self, cache: LocalCache):
        self._cache = cache

    @staticmethod
    def key(owner_id: str) -> str:
        return cache_key(PREFERENCE_BUCKET, owner_id)

    @staticmethod
    def legacy_key(owner_id: str) -> str:
        return cache_key(LEGACY_GENRE_BUCKET, owner_id)

    def load(self, owner_id: str) -> PreferenceRecord:
        raw = self._cache.get(self.key(owner_id))
        if raw is not None:
            return decode_preferences(raw)
        legacy = self._cache.get(self.legacy_key(owner_id))
        if legacy is None:
            return PreferenceRecord()
        # Only a bare genre array is meaningful under the legacy key.
        try:
            parsed = json.loads(legacy)
        except ValueError:
            return PreferenceRecord()
        if not isinstance(parsed, list):
            return PreferenceRecord()
        return decode_preferences(parsed)

    def save(self, owner_id: str, pref: PreferenceRecord) -> PreferenceRecord:
        """Store preferences with clamped years, mirroring genres to the legacy key."""

        stored = pref.model_copy(
            update={
                "year_from": clamp_year(pref.year_from),
                "year_to": clamp_year(pref.year_to),
            }
        )
        self._cache.set(self.key(owner_id), json.dumps(stored.to_storage()))
        self._cache.set(self.legacy_key(owner_id), json.dumps(list(stored.genre_ids)))
        return stored

    def compile(self, owner_id: str) -> DiscoveryQuery:
        return compile_discovery_query(self.load(owner_id))
