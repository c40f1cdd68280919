"""Watchlist membership management."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Iterable, Sequence

from ..cache import LOCAL_LIST_BUCKET, LocalCache, cache_key
from ..config import DEFAULT_WATCHLIST_NAME
from ..errors import CollectionNotFound, ValidationFailure
from ..models import (
    ContentDetails,
    ContentRef,
    MembershipRow,
    WatchlistCollection,
    WatchlistEntry,
)
from ..remote import RemoteStore
from ..utils import coerce_positive_id, dedupe_ids, utcnow
from .tmdb import MetadataGateway

logger = logging.getLogger(__name__)


class MembershipManager:
    """Manages one owner's watchlists and their members.

    The manager keeps an in-memory projection of the default watchlist's
    members, which is what :meth:`is_member` consults. Membership in other
    watchlists is only visible through :meth:`collections_containing`.

    Resolving the default watchlist is not safe against concurrent first
    adds: two callers may both find no watchlist and each create one. The
    oldest watchlist is always treated as the default, so a duplicate is
    harmless and simply shows up as a second list.
    """

    def __init__(
        self,
        owner_id: str,
        remote: RemoteStore,
        gateway: MetadataGateway,
        *,
        default_name: str = DEFAULT_WATCHLIST_NAME,
        metadata_concurrency: int = 8,
        local_index: LocalListIndex | None = None,
    ):
        if not owner_id or not owner_id.strip():
            raise ValidationFailure("An owner id is required to manage watchlists")
        self.owner_id = owner_id
        self._remote = remote
        self._gateway = gateway
        self._default_name = default_name
        self._metadata_concurrency = max(1, metadata_concurrency)
        self._local_index = local_index
        self._default_collection: WatchlistCollection | None = None
        self._default_member_ids: set[int] = set()

    async def resolve_default_collection(self) -> WatchlistCollection:
        """Return the owner's oldest watchlist, creating one when none exists."""

        existing = await self._remote.first_watchlist(self.owner_id)
        if existing is not None:
            self._default_collection = existing
            return existing

        created = await self._remote.insert_watchlist(self.owner_id, self._default_name)
        logger.info(
            "Created default watchlist %s for %s", created.id, self.owner_id
        )
        self._default_collection = created
        return created

    async def list_collections(self) -> list[WatchlistCollection]:
        return await self._remote.list_watchlists(self.owner_id)

    async def create_collection(
        self, name: str | None = None, description: str | None = None
    ) -> WatchlistCollection:
        cleaned_name = (name or "").strip() or self._default_name
        cleaned_description = (description or "").strip() or None
        return await self._remote.insert_watchlist(
            self.owner_id, cleaned_name, cleaned_description
        )

    async def load_default_collection(self) -> list[WatchlistEntry]:
        """Populate the default-watchlist projection from the remote store.

        Unlike :meth:`resolve_default_collection` this never creates a
        watchlist; an owner without one simply has an empty projection.
        """

        rows = await self.refresh_default_membership()
        return await self._hydrate(rows, keep_unresolved=True)

    async def refresh_default_membership(self) -> list[MembershipRow]:
        """Reload the default-watchlist projection without resolving metadata."""

        collection = await self._remote.first_watchlist(self.owner_id)
        self._default_collection = collection
        if collection is None:
            self._default_member_ids = set()
            return []
        rows = await self._remote.list_memberships(collection.id)
        self._default_member_ids = {row.content_id for row in rows}
        return rows

    async def list_members(self, collection_id: int) -> list[WatchlistEntry]:
        """Return hydrated members of one watchlist, skipping unresolvable items."""

        collection = await self._remote.get_watchlist(self.owner_id, collection_id)
        if collection is None:
            raise CollectionNotFound(collection_id)
        rows = await self._remote.list_memberships(collection.id)
        return await self._hydrate(rows, keep_unresolved=False)

    async def add_to_collections(
        self,
        content: ContentRef,
        collection_ids: Sequence[int] | None = None,
    ) -> list[int]:
        """Add ``content`` to the given watchlists, or to the default one.

        Returns the watchlist ids the content now belongs to as a result of
        this call. Content metadata is stored first; if that fails nothing
        else is written.
        """

        content_id = coerce_positive_id(content.id)
        if content_id is None:
            raise ValidationFailure("A content id is required to add to a watchlist")
        targets = await self._resolve_targets(collection_ids)
        if not targets:
            return []

        details = await self._gateway.get_details(content_id, content.media_type)
        await self._remote.upsert_content(self._content_record(details))

        added_at = utcnow()
        await self._remote.upsert_memberships(
            [
                MembershipRow(
                    collection_id=target,
                    content_id=content_id,
                    watched=False,
                    added_at=added_at,
                )
                for target in targets
            ]
        )

        if self._default_collection is not None and (
            self._default_collection.id in targets
        ):
            self._default_member_ids.add(content_id)
        return targets

    async def add_to_local_collections(
        self,
        content: ContentRef,
        collection_ids: Sequence[int] | None = None,
    ) -> list[int]:
        """File content the remote store does not model (shows) in the local index.

        Target watchlists are resolved and ownership-checked exactly as in
        :meth:`add_to_collections`; only the membership itself stays local.
        """

        if self._local_index is None:
            raise RuntimeError("No local list index configured")
        content_id = coerce_positive_id(content.id)
        if content_id is None:
            raise ValidationFailure("A content id is required to add to a watchlist")
        targets = await self._resolve_targets(collection_ids)
        if not targets:
            return []
        details = await self._gateway.get_details(content_id, content.media_type)
        self._local_index.add(details, targets)
        return targets

    async def remove_from_collection(self, collection_id: int, content_id: int) -> None:
        """Remove one membership; removing a non-member is not an error."""

        if coerce_positive_id(content_id) is None:
            raise ValidationFailure("A content id is required to remove from a watchlist")
        collection = await self._remote.get_watchlist(self.owner_id, collection_id)
        if collection is None:
            raise CollectionNotFound(collection_id)
        removed = await self._remote.delete_membership(collection_id, content_id)
        if self._local_index is not None:
            self._local_index.remove(collection_id, content_id)
        if not removed:
            logger.debug(
                "Content %s was not in watchlist %s", content_id, collection_id
            )
        if (
            self._default_collection is not None
            and self._default_collection.id == collection_id
        ):
            self._default_member_ids.discard(content_id)

    def is_member(self, content_id: int) -> bool:
        """Return whether ``content_id`` is in the loaded default watchlist."""

        return content_id in self._default_member_ids

    async def collections_containing(self, content_id: int) -> list[int]:
        return await self._remote.watchlists_containing(self.owner_id, content_id)

    async def delete_collection(self, collection_id: int) -> None:
        """Delete a watchlist's members, then the watchlist itself."""

        collection = await self._remote.get_watchlist(self.owner_id, collection_id)
        if collection is None:
            raise CollectionNotFound(collection_id)
        await self._remote.delete_memberships(collection_id)
        await self._remote.delete_watchlist(self.owner_id, collection_id)
        if self._local_index is not None:
            self._local_index.drop(collection_id)
        if (
            self._default_collection is not None
            and self._default_collection.id == collection_id
        ):
            self._default_collection = None
            self._default_member_ids = set()

    async def _resolve_targets(self, collection_ids: Sequence[int] | None) -> list[int]:
        if collection_ids is None:
            return [(await self.resolve_default_collection()).id]
        targets = self._validate_collection_ids(collection_ids)
        if not targets:
            return []
        owned = await self._remote.owned_watchlist_ids(self.owner_id, targets)
        missing = [target for target in targets if target not in owned]
        if missing:
            raise CollectionNotFound(missing[0])
        return targets

    @staticmethod
    def _validate_collection_ids(collection_ids: Iterable[Any]) -> list[int]:
        targets: list[int] = []
        for value in collection_ids:
            parsed = coerce_positive_id(value)
            if parsed is None:
                raise ValidationFailure(f"Invalid watchlist id: {value!r}")
            targets.append(parsed)
        return dedupe_ids(targets)

    def _content_record(self, details: ContentDetails) -> dict[str, Any]:
        return {
            "movie_id": details.id,
            "title": details.title,
            "release_year": details.release_year,
            "age_rating": details.maturity_rating,
            "runtime_minutes": details.runtime_minutes or 0,
            "original_language": details.language or "en",
            "average_viewer_rating": details.average_rating,
            "poster_url": self._gateway.image_url(details.poster_path, "w500"),
        }

    def _entry_from_details(
        self,
        details: ContentDetails,
        *,
        added_at: datetime | None = None,
        watched: bool = False,
    ) -> WatchlistEntry:
        return WatchlistEntry(
            content_id=details.id,
            title=details.title,
            year=details.release_year,
            rating=details.average_rating,
            genres=list(details.genres),
            image=self._gateway.image_url(details.poster_path, "w500"),
            watched=watched,
            added_at=added_at,
        )

    async def _hydrate(
        self, rows: Sequence[MembershipRow], *, keep_unresolved: bool
    ) -> list[WatchlistEntry]:
        semaphore = asyncio.Semaphore(self._metadata_concurrency)

        async def _lookup(row: MembershipRow) -> WatchlistEntry:
            async with semaphore:
                details = await self._gateway.get_details(row.content_id)
            return self._entry_from_details(
                details, added_at=row.added_at, watched=row.watched
            )

        results = await asyncio.gather(
            *(_lookup(row) for row in rows), return_exceptions=True
        )
        entries: list[WatchlistEntry] = []
        for row, result in zip(rows, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "Could not hydrate content %s: %s", row.content_id, result
                )
                if keep_unresolved:
                    entries.append(
                        WatchlistEntry(
                            content_id=row.content_id,
                            title=f"Movie #{row.content_id}",
                            watched=row.watched,
                            added_at=row.added_at,
                        )
                    )
                continue
            entries.append(result)
        return entries


class LocalListIndex:
    """Device-local watchlist membership for content the remote store does not model.

    Stored under ``tv_watchlist_by_list:{owner}`` as a JSON object mapping a
    watchlist id to the summaries of the items filed under it.
    """

    def __init__(self, owner_id: str, cache: LocalCache):
        self._key = cache_key(LOCAL_LIST_BUCKET, owner_id)
        self._cache = cache

    def read(self) -> dict[str, list[dict[str, Any]]]:
        raw = self._cache.get(self._key)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Discarding undecodable local list index %s", self._key)
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {
            str(key): [item for item in value if isinstance(item, dict)]
            for key, value in parsed.items()
            if isinstance(value, list)
        }

    def add(self, content: ContentDetails, collection_ids: Iterable[int]) -> list[int]:
        """File ``content`` under each watchlist, skipping ones that hold it already."""

        index = self.read()
        added: list[int] = []
        for collection_id in dedupe_ids(collection_ids):
            key = str(collection_id)
            existing = index.get(key, [])
            if any(item.get("id") == content.id for item in existing):
                continue
            index[key] = [
                *existing,
                {
                    "id": content.id,
                    "title": content.title,
                    "poster_path": content.poster_path,
                    "release_date": content.release_date,
                    "vote_average": content.average_rating,
                },
            ]
            added.append(collection_id)
        self._cache.set(self._key, json.dumps(index))
        return added

    def remove(self, collection_id: int, content_id: int) -> None:
        index = self.read()
        key = str(collection_id)
        if key not in index:
            return
        index[key] = [item for item in index[key] if item.get("id") != content_id]
        self._cache.set(self._key, json.dumps(index))

    def drop(self, collection_id: int) -> None:
        """Forget everything filed under a deleted watchlist."""

        index = self.read()
        if index.pop(str(collection_id), None) is None:
            return
        self._cache.set(self._key, json.dumps(index))

    def collections_for(self, content_id: int) -> list[int]:
        collections: list[int] = []
        for key, items in self.read().items():
            parsed = coerce_positive_id(key)
            if parsed is None:
                continue
            if any(item.get("id") == content_id for item in items):
                collections.append(parsed)
        return collections

    def items(self, collection_id: int) -> list[dict[str, Any]]:
        return list(self.read().get(str(collection_id), []))
