"""Note synchronization between the remote store and the local cache."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Literal

from ..cache import NOTE_BUCKET, LocalCache, cache_key
from ..errors import RemoteUnavailable, ValidationFailure
from ..models import ContentDetails
from ..remote import RemoteNote, RemoteStore
from ..utils import (
    MergeCandidate,
    coerce_positive_id,
    format_timestamp,
    merge_latest,
    newest_first,
    parse_timestamp,
    utcnow,
)
from .tmdb import MetadataGateway

logger = logging.getLogger(__name__)

REMOTE_UNAVAILABLE_ADVISORY = (
    "Cloud sync unavailable; showing notes saved on this device only."
)
SAVED_LOCALLY_ADVISORY = "Saved on this device only; not synced across devices."

NoteSource = Literal["remote", "local", "none"]


class LoadState(str, Enum):
    """States of a single note load."""

    REMOTE_ATTEMPT = "remote_attempt"
    LOCAL_FALLBACK = "local_fallback"
    RESOLVED = "resolved"


class RemoteOutcome(str, Enum):
    """How the remote lookup of a note turned out."""

    FOUND = "found"
    EMPTY = "empty"
    UNAVAILABLE = "unavailable"


def classify_remote(note: RemoteNote | None) -> RemoteOutcome:
    if note is None or not note.body.strip():
        return RemoteOutcome.EMPTY
    return RemoteOutcome.FOUND


def after_remote_attempt(outcome: RemoteOutcome) -> LoadState:
    """Only a non-empty remote body resolves the load directly."""

    if outcome is RemoteOutcome.FOUND:
        return LoadState.RESOLVED
    return LoadState.LOCAL_FALLBACK


def after_local_fallback(entry: LocalNote | None) -> LoadState:
    """The local fallback always resolves, with an empty body if needed."""

    return LoadState.RESOLVED


@dataclass(slots=True)
class LocalNote:
    """A note as read back from the local cache."""

    body: str
    updated_at: datetime | None


def _decode_structured_note(raw: str) -> LocalNote | None:
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    body = parsed.get("body")
    if not isinstance(body, str):
        return None
    stamp = parsed.get("updated_at", parsed.get("updatedAt"))
    return LocalNote(body=body, updated_at=parse_timestamp(stamp))


def _decode_legacy_note(raw: str) -> LocalNote | None:
    # Older builds stored the bare body text without a timestamp.
    if raw.lstrip().startswith("{"):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            return None
    return LocalNote(body=raw, updated_at=None)


_LOCAL_NOTE_DECODERS: tuple[Callable[[str], LocalNote | None], ...] = (
    _decode_structured_note,
    _decode_legacy_note,
)


def decode_local_note(raw: object) -> LocalNote | None:
    """Decode a cached note, trying the structured shape, then the legacy one."""

    if not isinstance(raw, str) or not raw:
        return None
    for decoder in _LOCAL_NOTE_DECODERS:
        decoded = decoder(raw)
        if decoded is not None:
            return decoded
    return None


def encode_local_note(body: str, updated_at: datetime | None) -> str:
    return json.dumps({"body": body, "updated_at": format_timestamp(updated_at)})


@dataclass(slots=True)
class AnnotationLoad:
    """Outcome of loading one note."""

    body: str
    source: NoteSource
    updated_at: datetime | None = None
    synced: bool = True
    advisory: str | None = None
    trail: list[LoadState] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "body": self.body,
            "source": self.source,
            "updatedAt": format_timestamp(self.updated_at),
            "synced": self.synced,
            "advisory": self.advisory,
        }


@dataclass(slots=True)
class SaveResult:
    """Outcome of saving one note; ``synced`` is false for a local-only save."""

    body: str
    updated_at: datetime
    synced: bool
    advisory: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "body": self.body,
            "updatedAt": format_timestamp(self.updated_at),
            "synced": self.synced,
            "advisory": self.advisory,
        }


@dataclass(slots=True)
class AnnotatedItem:
    """A merged note together with whatever metadata could be resolved."""

    content_id: int
    body: str
    updated_at: datetime | None
    source: NoteSource
    title: str
    year: int | None = None
    rating: float | None = None
    image: str | None = None
    metadata_resolved: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "movieId": self.content_id,
            "body": self.body,
            "updatedAt": format_timestamp(self.updated_at),
            "source": self.source,
            "movie": {
                "title": self.title,
                "year": self.year,
                "rating": self.rating,
                "image": self.image,
            },
            "metadataResolved": self.metadata_resolved,
        }


@dataclass(slots=True)
class AnnotationListing:
    """Every note an owner has, newest first."""

    items: list[AnnotatedItem]
    synced: bool = True
    advisory: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "items": [item.to_payload() for item in self.items],
            "synced": self.synced,
            "advisory": self.advisory,
        }


class AnnotationSynchronizer:
    """Loads, saves and lists notes across the remote store and local cache."""

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        gateway: MetadataGateway,
        *,
        metadata_concurrency: int = 8,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._remote = remote
        self._cache = cache
        self._gateway = gateway
        self._metadata_concurrency = max(1, metadata_concurrency)
        self._clock = clock

    @staticmethod
    def note_key(owner_id: str, content_id: int) -> str:
        return cache_key(NOTE_BUCKET, owner_id, content_id)

    @staticmethod
    def note_prefix(owner_id: str) -> str:
        return cache_key(NOTE_BUCKET, owner_id, "")

    async def load_annotation(self, owner_id: str, content_id: int) -> AnnotationLoad:
        """Return the note body, preferring the remote copy when it has one."""

        owner_id, content_id = self._validate(owner_id, content_id)
        state = LoadState.REMOTE_ATTEMPT
        trail: list[LoadState] = []
        synced = True
        advisory: str | None = None
        result = AnnotationLoad(body="", source="none")

        while state is not LoadState.RESOLVED:
            trail.append(state)
            if state is LoadState.REMOTE_ATTEMPT:
                try:
                    note = await self._remote.get_note(owner_id, content_id)
                except RemoteUnavailable:
                    note = None
                    outcome = RemoteOutcome.UNAVAILABLE
                    synced = False
                    advisory = REMOTE_UNAVAILABLE_ADVISORY
                else:
                    outcome = classify_remote(note)
                state = after_remote_attempt(outcome)
                if state is LoadState.RESOLVED and note is not None:
                    result = AnnotationLoad(
                        body=note.body, source="remote", updated_at=note.updated_at
                    )
            elif state is LoadState.LOCAL_FALLBACK:
                entry = decode_local_note(
                    self._cache.get(self.note_key(owner_id, content_id))
                )
                state = after_local_fallback(entry)
                if entry is not None:
                    result = AnnotationLoad(
                        body=entry.body, source="local", updated_at=entry.updated_at
                    )

        trail.append(LoadState.RESOLVED)
        result.synced = synced
        result.advisory = advisory
        result.trail = trail
        return result

    async def save_annotation(
        self, owner_id: str, content_id: int, body: str
    ) -> SaveResult:
        """Save a note remotely, then always mirror it into the local cache."""

        owner_id, content_id = self._validate(owner_id, content_id)
        if not isinstance(body, str):
            raise ValidationFailure("A note body must be a string")

        updated_at = self._clock()
        synced = True
        try:
            await self._remote.ensure_content(content_id)
            await self._remote.upsert_note(owner_id, content_id, body, updated_at)
        except RemoteUnavailable as exc:
            logger.warning(
                "Saving note %s/%s locally only: %s", owner_id, content_id, exc
            )
            synced = False

        self._cache.set(
            self.note_key(owner_id, content_id), encode_local_note(body, updated_at)
        )
        return SaveResult(
            body=body,
            updated_at=updated_at,
            synced=synced,
            advisory=None if synced else SAVED_LOCALLY_ADVISORY,
        )

    async def list_annotations(self, owner_id: str) -> AnnotationListing:
        """Merge local and remote notes, newest first, with metadata attached."""

        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationFailure("An owner id is required to list notes")

        local_candidates = self._local_candidates(owner_id)
        synced = True
        try:
            remote_notes = await self._remote.list_notes(owner_id)
        except RemoteUnavailable:
            remote_notes = []
            synced = False
        remote_candidates = [
            MergeCandidate(
                content_id=note.content_id,
                body=note.body,
                updated_at=note.updated_at,
                source="remote",
            )
            for note in remote_notes
        ]

        # Remote candidates go last so they win timestamp ties.
        merged = merge_latest([*local_candidates, *remote_candidates])
        survivors = newest_first(
            candidate for candidate in merged.values() if candidate.body.strip()
        )
        details = await self._resolve_metadata(
            [candidate.content_id for candidate in survivors]
        )

        items: list[AnnotatedItem] = []
        for candidate in survivors:
            resolved = details.get(candidate.content_id)
            if resolved is None:
                items.append(
                    AnnotatedItem(
                        content_id=candidate.content_id,
                        body=candidate.body,
                        updated_at=candidate.updated_at,
                        source=candidate.source,
                        title=f"Movie #{candidate.content_id}",
                    )
                )
                continue
            items.append(
                AnnotatedItem(
                    content_id=candidate.content_id,
                    body=candidate.body,
                    updated_at=candidate.updated_at,
                    source=candidate.source,
                    title=resolved.title,
                    year=resolved.release_year,
                    rating=resolved.average_rating,
                    image=self._gateway.image_url(resolved.poster_path, "w500"),
                    metadata_resolved=True,
                )
            )
        return AnnotationListing(
            items=items,
            synced=synced,
            advisory=None if synced else REMOTE_UNAVAILABLE_ADVISORY,
        )

    def _local_candidates(self, owner_id: str) -> list[MergeCandidate]:
        prefix = self.note_prefix(owner_id)
        candidates: list[MergeCandidate] = []
        for key in self._cache.list_keys(prefix):
            content_id = coerce_positive_id(key[len(prefix):])
            if content_id is None:
                continue
            entry = decode_local_note(self._cache.get(key))
            if entry is None:
                continue
            candidates.append(
                MergeCandidate(
                    content_id=content_id,
                    body=entry.body,
                    updated_at=entry.updated_at,
                    source="local",
                )
            )
        return candidates

    async def _resolve_metadata(
        self, content_ids: list[int]
    ) -> dict[int, ContentDetails]:
        if not content_ids:
            return {}
        semaphore = asyncio.Semaphore(self._metadata_concurrency)

        async def _lookup(content_id: int) -> ContentDetails:
            async with semaphore:
                return await self._gateway.get_details(content_id)

        results = await asyncio.gather(
            *(_lookup(content_id) for content_id in content_ids),
            return_exceptions=True,
        )
        resolved: dict[int, ContentDetails] = {}
        for content_id, result in zip(content_ids, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Metadata lookup failed for %s: %s", content_id, result)
                continue
            resolved[content_id] = result
        return resolved

    @staticmethod
    def _validate(owner_id: str, content_id: int) -> tuple[str, int]:
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise ValidationFailure("An owner id is required for notes")
        parsed = coerce_positive_id(content_id)
        if parsed is None:
            raise ValidationFailure("A content id is required for notes")
        return owner_id, parsed
