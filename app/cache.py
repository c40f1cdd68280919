"""Synchronous key/value stores used as the local fallback cache."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

NOTE_BUCKET = "movie_note"
PREFERENCE_BUCKET = "user_preferences"
LEGACY_GENRE_BUCKET = "movie_genre_preferences"
LOCAL_LIST_BUCKET = "tv_watchlist_by_list"


def cache_key(bucket: str, *parts: object) -> str:
    """Build a cache key scoped to a logical bucket, e.g. ``movie_note:u1:42``."""

    return ":".join([bucket, *(str(part) for part in parts)])


class LocalCache(Protocol):
    """Minimal synchronous key/value interface the services depend on."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...


class MemoryCache:
    """Process-local cache backed by a dictionary."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def list_keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileCache(MemoryCache):
    """Cache persisted to a single JSON document on disk.

    Every write rewrites the document through a temporary file so a crash
    mid-write leaves the previous state intact.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        super().__init__(self._load())

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable local cache at %s: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed local cache at %s", self._path)
            return {}
        return {
            str(key): value for key, value in payload.items() if isinstance(value, str)
        }

    def set(self, key: str, value: str) -> None:
        super().set(key, value)
        self._flush()

    def remove(self, key: str) -> None:
        if self.get(key) is None:
            return
        super().remove(key)
        self._flush()

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, ensure_ascii=False, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            with suppress(OSError):
                os.unlink(tmp_name)
            raise


def build_cache(path: str | None) -> LocalCache:
    """Return a file-backed cache when a path is configured, else in-memory."""

    if path:
        return JsonFileCache(path)
    return MemoryCache()
