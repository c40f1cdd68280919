"""Exception types shared by the watchlist, note and preference services."""

from __future__ import annotations


class ValidationFailure(ValueError):
    """A request was rejected before any store was touched."""


class RemoteUnavailable(RuntimeError):
    """The remote store could not serve the request.

    Raised for operational failures only: an unreachable database, a missing
    table or column. A query that simply matches no rows is not an error.
    """

    def __init__(self, operation: str, detail: str | None = None) -> None:
        self.operation = operation
        self.detail = detail
        message = f"Remote store unavailable during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MetadataUnavailable(RuntimeError):
    """Metadata for a single content item could not be resolved."""

    def __init__(self, content_id: int, detail: str | None = None) -> None:
        self.content_id = content_id
        self.detail = detail
        message = f"Metadata lookup failed for content {content_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CollectionNotFound(LookupError):
    """The requested watchlist does not exist for the owner."""

    def __init__(self, collection_id: int) -> None:
        self.collection_id = collection_id
        super().__init__(f"Watchlist {collection_id} not found")


class ContentNotFound(LookupError):
    """No content row exists for the requested id."""

    def __init__(self, content_id: int) -> None:
        self.content_id = content_id
        super().__init__(f"Content {content_id} not found")
