"""Note synchronization tests covering remote outages and merge ordering."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.cache import MemoryCache
from app.errors import ValidationFailure
from app.remote import RemoteNote
from app.services.annotations import (
    REMOTE_UNAVAILABLE_ADVISORY,
    SAVED_LOCALLY_ADVISORY,
    AnnotationSynchronizer,
    LoadState,
    RemoteOutcome,
    after_local_fallback,
    after_remote_attempt,
    classify_remote,
    decode_local_note,
    encode_local_note,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _unreachable_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested' / 'notes.db'}"


def test_save_survives_unreachable_remote(tmp_path, open_remote, gateway) -> None:
    """A save while the remote is down still lands in the local cache."""

    cache = MemoryCache()

    async def scenario():
        async with open_remote(_unreachable_url(tmp_path), create=False) as remote:
            sync = AnnotationSynchronizer(remote, cache, gateway, clock=lambda: NOW)
            saved = await sync.save_annotation("u1", 42, "Rewatch the ending")
            loaded = await sync.load_annotation("u1", 42)
            return saved, loaded

    saved, loaded = asyncio.run(scenario())

    assert saved.synced is False
    assert saved.advisory == SAVED_LOCALLY_ADVISORY
    assert decode_local_note(cache.get("movie_note:u1:42")).body == "Rewatch the ending"
    assert loaded.body == "Rewatch the ending"
    assert loaded.source == "local"
    assert loaded.synced is False
    assert loaded.advisory == REMOTE_UNAVAILABLE_ADVISORY
    assert loaded.trail == [
        LoadState.REMOTE_ATTEMPT,
        LoadState.LOCAL_FALLBACK,
        LoadState.RESOLVED,
    ]


def test_missing_tables_are_treated_as_unavailable(open_remote, gateway) -> None:
    cache = MemoryCache()

    async def scenario():
        async with open_remote(create=False) as remote:
            sync = AnnotationSynchronizer(remote, cache, gateway, clock=lambda: NOW)
            saved = await sync.save_annotation("u1", 42, "Schema drift")
            listing = await sync.list_annotations("u1")
            return saved, listing

    saved, listing = asyncio.run(scenario())

    assert saved.synced is False
    assert listing.synced is False
    assert [item.body for item in listing.items] == ["Schema drift"]


def test_synced_save_writes_both_stores(open_remote, gateway) -> None:
    cache = MemoryCache()

    async def scenario():
        async with open_remote() as remote:
            sync = AnnotationSynchronizer(remote, cache, gateway, clock=lambda: NOW)
            saved = await sync.save_annotation("u1", 42, "Great score")
            return saved, await remote.get_note("u1", 42)

    saved, remote_note = asyncio.run(scenario())

    assert saved.synced is True
    assert saved.advisory is None
    assert remote_note.body == "Great score"
    assert remote_note.updated_at == NOW
    assert decode_local_note(cache.get("movie_note:u1:42")).updated_at == NOW


def test_load_prefers_non_empty_remote_body(open_remote, gateway) -> None:
    cache = MemoryCache(
        {"movie_note:u1:42": encode_local_note("local draft", NOW + timedelta(days=1))}
    )

    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "remote copy", NOW)
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.load_annotation("u1", 42)

    loaded = asyncio.run(scenario())

    assert loaded.body == "remote copy"
    assert loaded.source == "remote"
    assert loaded.trail == [LoadState.REMOTE_ATTEMPT, LoadState.RESOLVED]


def test_load_falls_back_when_remote_body_is_blank(open_remote, gateway) -> None:
    cache = MemoryCache({"movie_note:u1:42": "legacy plain text"})

    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "   ", NOW)
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.load_annotation("u1", 42)

    loaded = asyncio.run(scenario())

    assert loaded.body == "legacy plain text"
    assert loaded.source == "local"
    assert loaded.updated_at is None
    assert loaded.synced is True


def test_load_without_any_note_is_empty(open_remote, gateway) -> None:
    async def scenario():
        async with open_remote() as remote:
            sync = AnnotationSynchronizer(remote, MemoryCache(), gateway)
            return await sync.load_annotation("u1", 42)

    loaded = asyncio.run(scenario())

    assert loaded.body == ""
    assert loaded.source == "none"


@pytest.mark.parametrize(
    ("local_offset", "expected"),
    [
        (timedelta(hours=1), "local body"),
        (timedelta(hours=-1), "remote body"),
        (timedelta(0), "remote body"),
    ],
)
def test_listing_keeps_latest_write(open_remote, gateway, local_offset, expected) -> None:
    cache = MemoryCache(
        {"movie_note:u1:42": encode_local_note("local body", NOW + local_offset)}
    )

    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "remote body", NOW)
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.list_annotations("u1")

    listing = asyncio.run(scenario())

    assert [item.body for item in listing.items] == [expected]


def test_listing_discards_newer_blank_body(open_remote, gateway) -> None:
    cache = MemoryCache(
        {"movie_note:u1:42": encode_local_note("old thoughts", NOW - timedelta(days=1))}
    )

    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "", NOW)
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.list_annotations("u1")

    assert asyncio.run(scenario()).items == []


def test_listing_orders_newest_first_and_labels_unresolved(open_remote, gateway) -> None:
    gateway.failing.add(7)
    cache = MemoryCache(
        {
            "movie_note:u1:7": encode_local_note("samurai", NOW - timedelta(days=2)),
            "movie_note:u1:555": "legacy note",
            "movie_note:u2:42": encode_local_note("someone else", NOW),
        }
    )

    async def scenario():
        async with open_remote() as remote:
            await remote.upsert_note("u1", 42, "answer", NOW)
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.list_annotations("u1")

    listing = asyncio.run(scenario())
    items = listing.items

    assert [item.content_id for item in items] == [42, 7, 555]
    assert items[0].title == "The Answer"
    assert items[0].metadata_resolved is True
    assert items[0].image == "https://img.test/w500/answer.jpg"
    assert items[1].title == "Movie #7"
    assert items[1].metadata_resolved is False
    assert items[2].title == "Movie #555"
    assert items[2].source == "local"
    assert listing.synced is True


def test_invalid_identifiers_are_rejected(open_remote, gateway) -> None:
    async def scenario():
        async with open_remote() as remote:
            sync = AnnotationSynchronizer(remote, MemoryCache(), gateway)
            with pytest.raises(ValidationFailure):
                await sync.save_annotation("u1", 0, "body")
            with pytest.raises(ValidationFailure):
                await sync.load_annotation("", 42)
            with pytest.raises(ValidationFailure):
                await sync.list_annotations(" ")

    asyncio.run(scenario())


def test_load_state_transitions() -> None:
    assert classify_remote(None) is RemoteOutcome.EMPTY
    assert classify_remote(RemoteNote(42, " \n", NOW)) is RemoteOutcome.EMPTY
    assert classify_remote(RemoteNote(42, "text", NOW)) is RemoteOutcome.FOUND

    assert after_remote_attempt(RemoteOutcome.FOUND) is LoadState.RESOLVED
    assert after_remote_attempt(RemoteOutcome.EMPTY) is LoadState.LOCAL_FALLBACK
    assert after_remote_attempt(RemoteOutcome.UNAVAILABLE) is LoadState.LOCAL_FALLBACK
    assert after_local_fallback(None) is LoadState.RESOLVED


def test_local_note_decoding_shapes() -> None:
    structured = decode_local_note('{"body": "hi", "updatedAt": "2024-05-01T12:00:00Z"}')
    legacy = decode_local_note("just text")
    foreign = decode_local_note('{"text": "no body field"}')

    assert structured.body == "hi"
    assert structured.updated_at == NOW
    assert legacy.body == "just text"
    assert legacy.updated_at is None
    assert foreign is None
    assert decode_local_note("") is None


def test_listing_skips_unparseable_cache_keys(open_remote, gateway) -> None:
    cache = MemoryCache(
        {
            "movie_note:u1:²": encode_local_note("stray", NOW),
            "movie_note:u1:42": encode_local_note("kept", NOW),
        }
    )

    async def scenario():
        async with open_remote() as remote:
            sync = AnnotationSynchronizer(remote, cache, gateway)
            return await sync.list_annotations("u1")

    listing = asyncio.run(scenario())

    assert [(item.content_id, item.body) for item in listing.items] == [(42, "kept")]
