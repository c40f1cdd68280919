"""Pytest configuration and test helpers."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path


# Ensure the application package is importable when running tests without an
# editable install. This mirrors the expected runtime layout where ``app`` sits
# at the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402

from app.database import Database  # noqa: E402
from app.errors import MetadataUnavailable  # noqa: E402
from app.models import ContentDetails  # noqa: E402
from app.remote import RemoteStore  # noqa: E402
from app.services.tmdb import DiscoverResult  # noqa: E402


class FakeGateway:
    """In-memory metadata gateway that records lookups."""

    def __init__(self, catalog: dict[int, ContentDetails]):
        self.catalog = dict(catalog)
        self.failing: set[int] = set()
        self.calls: list[tuple[int, str]] = []
        self.discover_calls: list[tuple[str, dict[str, str], int]] = []

    async def get_details(self, content_id: int, media_type: str = "movie") -> ContentDetails:
        self.calls.append((content_id, media_type))
        if content_id in self.failing or content_id not in self.catalog:
            raise MetadataUnavailable(content_id, "not found")
        return self.catalog[content_id]

    def image_url(self, path: str | None, size: str = "w500") -> str | None:
        if not path:
            return None
        return f"https://img.test/{size}{path}"

    async def discover(
        self, endpoint: str, params: dict[str, str], *, page: int = 1
    ) -> list[DiscoverResult]:
        self.discover_calls.append((endpoint, dict(params), page))
        media_type = "tv" if endpoint.endswith("tv") else "movie"
        return [
            DiscoverResult(
                tmdb_id=details.id,
                title=details.title,
                media_type=media_type,
                poster_path=details.poster_path,
                release_date=details.release_date,
                average_rating=details.average_rating,
                genre_ids=[],
            )
            for details in self.catalog.values()
            if details.media_type == media_type
        ]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(
        {
            42: ContentDetails(
                id=42,
                title="The Answer",
                release_date="1999-03-31",
                poster_path="/answer.jpg",
                average_rating=8.1,
                genres=["Science Fiction"],
                runtime_minutes=136,
                language="en",
            ),
            7: ContentDetails(
                id=7,
                title="Seven Samurai",
                release_date="1954-04-26",
                poster_path="/seven.jpg",
                average_rating=8.6,
                genres=["Drama"],
                runtime_minutes=207,
                language="ja",
            ),
            99: ContentDetails(
                id=99,
                media_type="tv",
                title="Long Running Show",
                release_date="2008-01-20",
                poster_path="/show.jpg",
                average_rating=9.0,
            ),
        }
    )


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'reelkeeper.db'}"


@pytest.fixture
def open_remote(database_url):
    """Return a factory opening a freshly migrated remote store.

    Use it inside a single event loop, e.g. ``async with open_remote() as remote``.
    """

    @asynccontextmanager
    async def _open(url: str | None = None, *, create: bool = True):
        database = Database(url or database_url)
        try:
            if create:
                await database.create_all()
            yield RemoteStore(database.session_factory)
        finally:
            await database.dispose()

    return _open
