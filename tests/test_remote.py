"""Remote store repository tests against SQLite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from app.db_models import Movie
from app.errors import RemoteUnavailable
from app.models import MembershipRow

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_watchlists_are_scoped_by_owner(open_remote) -> None:
    async def scenario():
        async with open_remote() as remote:
            mine = await remote.insert_watchlist("u1", "Mine")
            theirs = await remote.insert_watchlist("u2", "Theirs")
            return (
                mine,
                theirs,
                await remote.list_watchlists("u1"),
                await remote.get_watchlist("u1", theirs.id),
                await remote.owned_watchlist_ids("u1", [mine.id, theirs.id]),
                await remote.first_watchlist("nobody"),
            )

    mine, theirs, listed, foreign, owned, missing = asyncio.run(scenario())

    assert [collection.id for collection in listed] == [mine.id]
    assert foreign is None
    assert owned == {mine.id}
    assert missing is None
    assert mine.created_at.tzinfo is not None


def test_upsert_content_refreshes_existing_row(open_remote) -> None:
    async def scenario():
        async with open_remote() as remote:
            await remote.ensure_content(42)
            await remote.upsert_content({"movie_id": 42, "title": "The Answer", "runtime_minutes": 136})
            await remote.ensure_content(42)
            await remote.upsert_content({"movie_id": 42, "title": "The Answer (Remastered)"})
            async with remote._session("test") as session:
                return await session.get(Movie, 42)

    movie = asyncio.run(scenario())

    assert movie.title == "The Answer (Remastered)"
    assert movie.runtime_minutes == 136


def test_membership_upsert_and_delete(open_remote) -> None:
    async def scenario():
        async with open_remote() as remote:
            collection = await remote.insert_watchlist("u1", "Mine")
            row = MembershipRow(collection_id=collection.id, content_id=42, added_at=NOW)
            await remote.upsert_memberships([row])
            await remote.upsert_memberships([row])
            await remote.upsert_memberships([])
            listed = await remote.list_memberships(collection.id)
            containing = await remote.watchlists_containing("u1", 42)
            first = await remote.delete_membership(collection.id, 42)
            second = await remote.delete_membership(collection.id, 42)
            return listed, containing, first, second, collection

    listed, containing, first, second, collection = asyncio.run(scenario())

    assert [(row.content_id, row.added_at) for row in listed] == [(42, NOW)]
    assert containing == [collection.id]
    assert (first, second) == (1, 0)


def test_note_upsert_overwrites_body(open_remote) -> None:
    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "first", NOW)
            await remote.upsert_note("u1", 42, "second", NOW)
            await remote.upsert_note("u2", 42, "other owner", NOW)
            return await remote.list_notes("u1"), await remote.get_note("u1", 7)

    notes, missing = asyncio.run(scenario())

    assert [(note.content_id, note.body, note.updated_at) for note in notes] == [
        (42, "second", NOW)
    ]
    assert missing is None


def test_unreachable_database_raises_remote_unavailable(tmp_path, open_remote) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'nope' / 'db.sqlite'}"

    async def scenario():
        async with open_remote(url, create=False) as remote:
            with pytest.raises(RemoteUnavailable) as excinfo:
                await remote.list_watchlists("u1")
            return excinfo.value

    error = asyncio.run(scenario())

    assert error.operation == "list_watchlists"
