"""Pydantic models describing watchlists, content and preferences."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
)

from .utils import clamp_year, dedupe_ids

MediaType = Literal["movie", "tv"]

DEFAULT_MEDIA_TYPE: MediaType = "movie"

ContentSortColumn = Literal[
    "title",
    "release_year",
    "runtime_minutes",
    "average_viewer_rating",
    "age_rating",
    "original_language",
    "movie_id",
]


class ContentRef(BaseModel):
    """Identifies a movie or show the user acted on."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = Field(
        default=None,
        validation_alias=AliasChoices("id", "contentId", "movieId", "content_id"),
    )
    media_type: MediaType = Field(
        default=DEFAULT_MEDIA_TYPE,
        validation_alias=AliasChoices("media_type", "mediaType", "type"),
    )
    title: str | None = None


class ContentDetails(BaseModel):
    """Display metadata resolved through the metadata gateway."""

    id: int
    media_type: MediaType = DEFAULT_MEDIA_TYPE
    title: str
    release_date: str | None = None
    poster_path: str | None = None
    average_rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    runtime_minutes: int | None = None
    language: str | None = None
    adult: bool = False
    cast: list[str] = Field(default_factory=list)

    @property
    def release_year(self) -> int | None:
        value = self.release_date or ""
        if len(value) < 4:
            return None
        try:
            return int(value[:4])
        except ValueError:
            return None

    @property
    def maturity_rating(self) -> str:
        return "R" if self.adult else "PG-13"


class WatchlistCollection(BaseModel):
    """A named list of content owned by one user."""

    id: int
    owner_id: str
    name: str | None = None
    description: str | None = None
    created_at: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "watchlistId": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class MembershipRow(BaseModel):
    """A single (collection, content) relation."""

    collection_id: int
    content_id: int
    watched: bool = False
    added_at: datetime | None = None


class WatchlistEntry(BaseModel):
    """A watchlist member hydrated with display metadata."""

    content_id: int
    title: str
    year: int | None = None
    rating: float | None = None
    genres: list[str] = Field(default_factory=list)
    image: str | None = None
    watched: bool = False
    added_at: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.content_id,
            "title": self.title,
            "year": self.year,
            "rating": self.rating,
            "genre": list(self.genres),
            "image": self.image,
            "watched": self.watched,
            "addedDate": self.added_at.date().isoformat() if self.added_at else None,
        }


class PreferenceRecord(BaseModel):
    """Discovery preferences persisted on this device."""

    model_config = ConfigDict(populate_by_name=True)

    media_type: MediaType = Field(
        default=DEFAULT_MEDIA_TYPE,
        validation_alias=AliasChoices("mediaType", "media_type"),
        serialization_alias="mediaType",
    )
    genre_ids: list[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("genreIds", "genre_ids"),
        serialization_alias="genreIds",
    )
    year_from: int | None = Field(
        default=None,
        validation_alias=AliasChoices("yearFrom", "year_from"),
        serialization_alias="yearFrom",
    )
    year_to: int | None = Field(
        default=None,
        validation_alias=AliasChoices("yearTo", "year_to"),
        serialization_alias="yearTo",
    )

    @field_validator("genre_ids", mode="after")
    @classmethod
    def _unique_genres(cls, value: list[int]) -> list[int]:
        return dedupe_ids(value)

    @field_validator("year_from", "year_to", mode="before")
    @classmethod
    def _clamp_years(cls, value: object) -> object:
        if value is None:
            return None
        return clamp_year(value)

    def to_storage(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class CreateWatchlistRequest(BaseModel):
    """Payload for creating a new watchlist."""

    name: str | None = Field(default=None, max_length=120)
    description: str | None = None


class AddItemRequest(BaseModel):
    """Payload for adding a title to one or more watchlists."""

    model_config = ConfigDict(populate_by_name=True)

    content: ContentRef
    watchlist_ids: list[int] | None = Field(
        default=None,
        validation_alias=AliasChoices("watchlistIds", "watchlist_ids", "collectionIds"),
    )


class NoteUpdate(BaseModel):
    """Payload for saving a note."""

    body: str


class ContentRecord(BaseModel):
    """A row of the shared content table."""

    movie_id: int
    title: str | None = None
    release_year: int | None = None
    age_rating: str | None = None
    runtime_minutes: int | None = None
    original_language: str | None = None
    average_viewer_rating: float | None = None
    poster_url: str | None = None

    def to_payload(self) -> dict[str, object]:
        return self.model_dump()


class ContentSearch(BaseModel):
    """Filters, ordering and paging for browsing the content table."""

    model_config = ConfigDict(populate_by_name=True)

    q: str | None = Field(default=None, validation_alias=AliasChoices("q", "query"))
    age_rating: str | None = Field(
        default=None, validation_alias=AliasChoices("ageRating", "age_rating")
    )
    language: str | None = None
    runtime_min: int | None = Field(
        default=None,
        ge=0,
        le=100_000,
        validation_alias=AliasChoices("runtimeMin", "runtime_min"),
    )
    runtime_max: int | None = Field(
        default=None,
        ge=0,
        le=100_000,
        validation_alias=AliasChoices("runtimeMax", "runtime_max"),
    )
    sort_by: ContentSortColumn = Field(
        default="title", validation_alias=AliasChoices("sortBy", "sort_by")
    )
    sort_dir: Literal["asc", "desc"] = Field(
        default="asc", validation_alias=AliasChoices("sortDir", "sort_dir")
    )
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0, le=1_000_000)

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> ContentSearch:
        return cls.model_validate(dict(params))

    @field_validator("q", "age_rating", "language", "runtime_min", "runtime_max", mode="before")
    @classmethod
    def _blank_as_missing(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("sort_by", "sort_dir", "limit", "offset", mode="before")
    @classmethod
    def _blank_as_default(cls, value: object, info: ValidationInfo) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        if isinstance(value, str) and info.field_name == "sort_dir":
            return value.strip().lower()
        return value


class ContentUpdate(BaseModel):
    """Partial update of a content row; only fields present are written."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    title: str | None = Field(default=None, max_length=255)
    release_year: int | None = Field(
        default=None,
        ge=0,
        le=9999,
        validation_alias=AliasChoices("release_year", "releaseYear"),
    )
    age_rating: str | None = Field(
        default=None,
        max_length=16,
        validation_alias=AliasChoices("age_rating", "ageRating"),
    )
    runtime_minutes: int | None = Field(
        default=None,
        ge=0,
        le=100_000,
        validation_alias=AliasChoices("runtime_minutes", "runtimeMinutes"),
    )
    original_language: str | None = Field(
        default=None,
        max_length=16,
        validation_alias=AliasChoices("original_language", "originalLanguage", "language"),
    )
    average_viewer_rating: float | None = Field(
        default=None,
        ge=0,
        le=10,
        validation_alias=AliasChoices("average_viewer_rating", "averageViewerRating"),
    )
    poster_url: str | None = Field(
        default=None,
        max_length=512,
        validation_alias=AliasChoices("poster_url", "posterUrl"),
    )

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)
