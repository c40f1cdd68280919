"""Utility helpers shared by the ReelKeeper services."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Iterable, Literal

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MIN_YEAR = 1900

CandidateSource = Literal["local", "remote"]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def naive_utc(value: datetime) -> datetime:
    """Return ``value`` as a naive UTC datetime for ``DateTime`` columns."""

    return as_utc(value).replace(tzinfo=None)


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-8601 string or datetime, returning ``None`` when unusable."""

    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def timestamp_sort_key(value: datetime | None) -> datetime:
    """Sort key treating a missing timestamp as the oldest possible one."""

    return as_utc(value) if value is not None else EPOCH


def dedupe_ids(values: Iterable[int]) -> list[int]:
    """Return ``values`` without duplicates, preserving first-seen order."""

    seen: set[int] = set()
    unique: list[int] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


@dataclass(slots=True)
class MergeCandidate:
    """One store's view of a note for a content item."""

    content_id: int
    body: str
    updated_at: datetime | None
    source: CandidateSource


def merge_latest(candidates: Iterable[MergeCandidate]) -> dict[int, MergeCandidate]:
    """Merge candidates by content id keeping the most recently updated one.

    Candidates are applied in iteration order and a later candidate replaces
    an earlier one when its timestamp is greater or equal, so on ties the
    last-applied candidate wins. Missing timestamps count as the epoch.
    """

    merged: dict[int, MergeCandidate] = {}
    for candidate in candidates:
        existing = merged.get(candidate.content_id)
        if existing is None:
            merged[candidate.content_id] = candidate
            continue
        if timestamp_sort_key(candidate.updated_at) >= timestamp_sort_key(
            existing.updated_at
        ):
            merged[candidate.content_id] = candidate
    return merged


def newest_first(candidates: Iterable[MergeCandidate]) -> list[MergeCandidate]:
    return sorted(
        candidates,
        key=lambda candidate: timestamp_sort_key(candidate.updated_at),
        reverse=True,
    )


def coerce_positive_id(value: object) -> int | None:
    """Return a positive integer identifier or ``None``."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str):
        text = value.strip()
        if not (text.isascii() and text.isdecimal()):
            return None
        parsed = int(text)
        return parsed if parsed > 0 else None
    return None


def clamp_year(value: object, *, current_year: int | None = None) -> int | None:
    """Clamp a year into ``[1900, current year]``; unusable input gives ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        try:
            number: int | float = int(text)
        except ValueError:
            try:
                number = float(text)
            except (ValueError, OverflowError):
                return None
    elif isinstance(value, (int, float)):
        number = value
    else:
        return None
    # Ints are compared exactly; huge ones overflow when turned into floats.
    if isinstance(number, float) and not math.isfinite(number):
        return None

    ceiling = current_year if current_year is not None else date.today().year
    if number < MIN_YEAR:
        return MIN_YEAR
    if number > ceiling:
        return ceiling
    return math.floor(number)
