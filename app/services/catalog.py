"""Browsing and editing the shared content table."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..errors import ContentNotFound, ValidationFailure
from ..models import ContentRecord, ContentSearch, ContentUpdate
from ..remote import RemoteStore
from ..utils import coerce_positive_id

logger = logging.getLogger(__name__)

# Largest value a signed 64-bit integer column can hold.
MAX_CONTENT_ID = 2**63 - 1


@dataclass(slots=True)
class ContentPage:
    """One page of content rows plus the unpaged match count."""

    items: list[ContentRecord] = field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "items": [item.to_payload() for item in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


class ContentCatalog:
    """Search, fetch and partially update rows of the content table."""

    def __init__(self, remote: RemoteStore):
        self._remote = remote

    async def search(self, search: ContentSearch) -> ContentPage:
        items, total = await self._remote.search_content(search)
        return ContentPage(
            items=items, total=total, limit=search.limit, offset=search.offset
        )

    async def get(self, content_id: int) -> ContentRecord:
        movie_id = self._validate_id(content_id)
        record = await self._remote.get_content(movie_id)
        if record is None:
            raise ContentNotFound(movie_id)
        return record

    async def update(self, content_id: int, update: ContentUpdate) -> ContentRecord:
        """Apply the fields present in ``update``; an empty update is rejected."""

        movie_id = self._validate_id(content_id)
        changes = update.changes()
        if not changes:
            raise ValidationFailure("No fields provided to update")
        record = await self._remote.update_content(movie_id, changes)
        if record is None:
            raise ContentNotFound(movie_id)
        logger.info("Updated content %s fields %s", movie_id, sorted(changes))
        return record

    @staticmethod
    def _validate_id(content_id: Any) -> int:
        movie_id = coerce_positive_id(content_id)
        if movie_id is None or movie_id > MAX_CONTENT_ID:
            raise ValidationFailure("A content id must be a positive 64-bit integer")
        return movie_id
