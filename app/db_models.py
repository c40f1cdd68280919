"""SQLAlchemy ORM models backing the remote authoritative store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class Watchlist(Base):
    """A named collection of content owned by a single user."""

    __tablename__ = "watchlists"

    watchlist_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    items: Mapped[list["WatchlistItem"]] = relationship(
        back_populates="watchlist", cascade="all, delete-orphan"
    )


class Movie(Base):
    """Denormalized copy of external metadata used as a join target."""

    __tablename__ = "movies"

    movie_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    release_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    age_rating: Mapped[str | None] = mapped_column(String(16), nullable=True)
    runtime_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    original_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    average_viewer_rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    poster_url: Mapped[str | None] = mapped_column(String(512), nullable=True)


class WatchlistItem(Base):
    """Membership of a content item in a watchlist."""

    __tablename__ = "watchlist_items"
    __table_args__ = (
        UniqueConstraint("watchlist_id", "movie_id", name="uq_watchlist_movie"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    watchlist_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watchlists.watchlist_id", ondelete="CASCADE"), index=True
    )
    movie_id: Mapped[int] = mapped_column(Integer, ForeignKey("movies.movie_id"))
    is_watched: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    watchlist: Mapped[Watchlist] = relationship(back_populates="items")


class Note(Base):
    """Free-text note a user attached to a content item."""

    __tablename__ = "notes"
    __table_args__ = (
        UniqueConstraint("user_id", "movie_id", name="uq_note_user_movie"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    movie_id: Mapped[int] = mapped_column(Integer, ForeignKey("movies.movie_id"))
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
