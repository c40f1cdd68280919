"""Repository over the remote authoritative store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import Movie, Note, Watchlist, WatchlistItem
from .errors import RemoteUnavailable
from .models import ContentRecord, ContentSearch, MembershipRow, WatchlistCollection
from .utils import as_utc, naive_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RemoteNote:
    """A note row as stored remotely."""

    content_id: int
    body: str
    updated_at: datetime | None


class RemoteStore:
    """Equality-scoped select/insert/upsert/delete over the relational schema.

    Every public coroutine is one independent round trip with its own
    session. Operational failures raise :class:`RemoteUnavailable`; a query
    matching nothing returns ``None`` or an empty collection.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("Remote store %s failed: %s", operation, exc)
            raise RemoteUnavailable(operation, str(exc)) from exc

    # Watchlists -----------------------------------------------------------

    async def list_watchlists(
        self, owner_id: str, *, limit: int | None = None
    ) -> list[WatchlistCollection]:
        async with self._session("list_watchlists") as session:
            stmt = (
                select(Watchlist)
                .where(Watchlist.user_id == owner_id)
                .order_by(Watchlist.created_at.asc(), Watchlist.watchlist_id.asc())
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [self._to_collection(row) for row in result.scalars().all()]

    async def first_watchlist(self, owner_id: str) -> WatchlistCollection | None:
        rows = await self.list_watchlists(owner_id, limit=1)
        if not rows:
            logger.debug("No watchlists found for %s", owner_id)
            return None
        return rows[0]

    async def get_watchlist(
        self, owner_id: str, watchlist_id: int
    ) -> WatchlistCollection | None:
        async with self._session("get_watchlist") as session:
            stmt = select(Watchlist).where(
                Watchlist.user_id == owner_id,
                Watchlist.watchlist_id == watchlist_id,
            )
            result = await session.execute(stmt)
            row = result.scalars().first()
            return self._to_collection(row) if row is not None else None

    async def owned_watchlist_ids(
        self, owner_id: str, watchlist_ids: Iterable[int]
    ) -> set[int]:
        ids = list(watchlist_ids)
        if not ids:
            return set()
        async with self._session("owned_watchlist_ids") as session:
            stmt = select(Watchlist.watchlist_id).where(
                Watchlist.user_id == owner_id,
                Watchlist.watchlist_id.in_(ids),
            )
            result = await session.execute(stmt)
            return set(result.scalars().all())

    async def insert_watchlist(
        self,
        owner_id: str,
        name: str | None,
        description: str | None = None,
    ) -> WatchlistCollection:
        async with self._session("insert_watchlist") as session:
            row = Watchlist(
                user_id=owner_id,
                name=name,
                description=description,
                created_at=naive_utc(utcnow()),
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return self._to_collection(row)

    async def delete_watchlist(self, owner_id: str, watchlist_id: int) -> int:
        async with self._session("delete_watchlist") as session:
            result = await session.execute(
                delete(Watchlist).where(
                    Watchlist.user_id == owner_id,
                    Watchlist.watchlist_id == watchlist_id,
                )
            )
            await session.commit()
            return result.rowcount or 0

    # Content --------------------------------------------------------------

    async def upsert_content(self, values: dict[str, Any]) -> None:
        """Insert or refresh a content row keyed by ``movie_id``."""

        async with self._session("upsert_content") as session:
            await self._upsert(
                session,
                Movie,
                [values],
                conflict=("movie_id",),
                update_columns=tuple(key for key in values if key != "movie_id"),
            )
            await session.commit()

    async def ensure_content(self, movie_id: int) -> None:
        """Make sure a content row exists without touching existing data."""

        async with self._session("ensure_content") as session:
            await self._upsert(
                session,
                Movie,
                [{"movie_id": movie_id}],
                conflict=("movie_id",),
                update_columns=(),
            )
            await session.commit()

    async def get_content(self, movie_id: int) -> ContentRecord | None:
        async with self._session("get_content") as session:
            row = await session.get(Movie, movie_id)
            return self._to_content(row) if row is not None else None

    async def search_content(
        self, search: ContentSearch
    ) -> tuple[list[ContentRecord], int]:
        """Return one page of matching content rows and the total match count."""

        criteria = []
        if search.q:
            criteria.append(Movie.title.icontains(search.q, autoescape=True))
        if search.age_rating:
            criteria.append(Movie.age_rating == search.age_rating)
        if search.language:
            criteria.append(Movie.original_language == search.language)
        if search.runtime_min is not None:
            criteria.append(Movie.runtime_minutes >= search.runtime_min)
        if search.runtime_max is not None:
            criteria.append(Movie.runtime_minutes <= search.runtime_max)

        column = getattr(Movie, search.sort_by)
        ordering = column.desc() if search.sort_dir == "desc" else column.asc()
        count_stmt = select(func.count()).select_from(Movie)
        page_stmt = (
            select(Movie)
            .order_by(ordering, Movie.movie_id.asc())
            .limit(search.limit)
            .offset(search.offset)
        )
        if criteria:
            count_stmt = count_stmt.where(*criteria)
            page_stmt = page_stmt.where(*criteria)

        async with self._session("search_content") as session:
            total = (await session.execute(count_stmt)).scalar_one()
            result = await session.execute(page_stmt)
            return [self._to_content(row) for row in result.scalars().all()], total

    async def update_content(
        self, movie_id: int, values: dict[str, Any]
    ) -> ContentRecord | None:
        """Write ``values`` onto an existing content row; ``None`` if it is absent."""

        async with self._session("update_content") as session:
            row = await session.get(Movie, movie_id)
            if row is None:
                return None
            for column, value in values.items():
                setattr(row, column, value)
            await session.commit()
            return self._to_content(row)

    # Memberships ----------------------------------------------------------

    async def upsert_memberships(self, rows: Sequence[MembershipRow]) -> None:
        if not rows:
            return
        values = [
            {
                "watchlist_id": row.collection_id,
                "movie_id": row.content_id,
                "is_watched": row.watched,
                "added_at": naive_utc(row.added_at or utcnow()),
            }
            for row in rows
        ]
        async with self._session("upsert_memberships") as session:
            await self._upsert(
                session,
                WatchlistItem,
                values,
                conflict=("watchlist_id", "movie_id"),
                update_columns=("is_watched", "added_at"),
            )
            await session.commit()

    async def list_memberships(self, watchlist_id: int) -> list[MembershipRow]:
        async with self._session("list_memberships") as session:
            stmt = (
                select(WatchlistItem)
                .where(WatchlistItem.watchlist_id == watchlist_id)
                .order_by(WatchlistItem.added_at.asc(), WatchlistItem.id.asc())
            )
            result = await session.execute(stmt)
            return [
                MembershipRow(
                    collection_id=item.watchlist_id,
                    content_id=item.movie_id,
                    watched=bool(item.is_watched),
                    added_at=as_utc(item.added_at) if item.added_at else None,
                )
                for item in result.scalars().all()
            ]

    async def watchlists_containing(self, owner_id: str, movie_id: int) -> list[int]:
        async with self._session("watchlists_containing") as session:
            stmt = (
                select(WatchlistItem.watchlist_id)
                .join(Watchlist, Watchlist.watchlist_id == WatchlistItem.watchlist_id)
                .where(
                    Watchlist.user_id == owner_id,
                    WatchlistItem.movie_id == movie_id,
                )
                .order_by(Watchlist.created_at.asc(), Watchlist.watchlist_id.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_membership(self, watchlist_id: int, movie_id: int) -> int:
        async with self._session("delete_membership") as session:
            result = await session.execute(
                delete(WatchlistItem).where(
                    WatchlistItem.watchlist_id == watchlist_id,
                    WatchlistItem.movie_id == movie_id,
                )
            )
            await session.commit()
            return result.rowcount or 0

    async def delete_memberships(self, watchlist_id: int) -> int:
        async with self._session("delete_memberships") as session:
            result = await session.execute(
                delete(WatchlistItem).where(WatchlistItem.watchlist_id == watchlist_id)
            )
            await session.commit()
            return result.rowcount or 0

    # Notes ----------------------------------------------------------------

    async def get_note(self, owner_id: str, movie_id: int) -> RemoteNote | None:
        async with self._session("get_note") as session:
            stmt = select(Note).where(
                Note.user_id == owner_id,
                Note.movie_id == movie_id,
            )
            result = await session.execute(stmt)
            row = result.scalars().first()
            if row is None:
                logger.debug("No remote note for %s/%s", owner_id, movie_id)
                return None
            return self._to_note(row)

    async def list_notes(self, owner_id: str) -> list[RemoteNote]:
        async with self._session("list_notes") as session:
            result = await session.execute(select(Note).where(Note.user_id == owner_id))
            return [self._to_note(row) for row in result.scalars().all()]

    async def upsert_note(
        self, owner_id: str, movie_id: int, body: str, updated_at: datetime
    ) -> None:
        async with self._session("upsert_note") as session:
            await self._upsert(
                session,
                Note,
                [
                    {
                        "user_id": owner_id,
                        "movie_id": movie_id,
                        "body": body,
                        "updated_at": naive_utc(updated_at),
                    }
                ],
                conflict=("user_id", "movie_id"),
                update_columns=("body", "updated_at"),
            )
            await session.commit()

    # Helpers --------------------------------------------------------------

    @staticmethod
    async def _upsert(
        session: AsyncSession,
        model: type,
        values: list[dict[str, Any]],
        *,
        conflict: tuple[str, ...],
        update_columns: tuple[str, ...],
    ) -> None:
        dialect = session.get_bind().dialect.name
        if dialect in {"sqlite", "postgresql"}:
            insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
            stmt = insert_fn(model).values(values)
            if update_columns:
                stmt = stmt.on_conflict_do_update(
                    index_elements=list(conflict),
                    set_={column: stmt.excluded[column] for column in update_columns},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict))
            await session.execute(stmt)
            return

        # Portable path for dialects without ON CONFLICT support.
        for entry in values:
            criteria = [getattr(model, column) == entry[column] for column in conflict]
            result = await session.execute(select(model).where(*criteria))
            existing = result.scalars().first()
            if existing is None:
                session.add(model(**entry))
                continue
            for column in update_columns:
                setattr(existing, column, entry[column])

    @staticmethod
    def _to_collection(row: Watchlist) -> WatchlistCollection:
        return WatchlistCollection(
            id=row.watchlist_id,
            owner_id=row.user_id,
            name=row.name,
            description=row.description,
            created_at=as_utc(row.created_at) if row.created_at else None,
        )

    @staticmethod
    def _to_content(row: Movie) -> ContentRecord:
        return ContentRecord(
            movie_id=row.movie_id,
            title=row.title,
            release_year=row.release_year,
            age_rating=row.age_rating,
            runtime_minutes=row.runtime_minutes,
            original_language=row.original_language,
            average_viewer_rating=row.average_viewer_rating,
            poster_url=row.poster_url,
        )

    @staticmethod
    def _to_note(row: Note) -> RemoteNote:
        return RemoteNote(
            content_id=row.movie_id,
            body=row.body if isinstance(row.body, str) else "",
            updated_at=as_utc(row.updated_at) if row.updated_at else None,
        )
