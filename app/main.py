"""Entry point for the FastAPI-powered watchlist service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .cache import LocalCache, build_cache
from .config import Settings, settings
from .database import Database
from .errors import (
    CollectionNotFound,
    ContentNotFound,
    MetadataUnavailable,
    RemoteUnavailable,
    ValidationFailure,
)
from .models import (
    AddItemRequest,
    ContentSearch,
    ContentUpdate,
    CreateWatchlistRequest,
    NoteUpdate,
    PreferenceRecord,
)
from .remote import RemoteStore
from .services.annotations import AnnotationSynchronizer
from .services.catalog import ContentCatalog
from .services.membership import LocalListIndex, MembershipManager
from .services.preferences import PreferenceStore
from .services.tmdb import TMDBClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@dataclass
class ServiceContainer:
    """Long-lived collaborators shared by every request."""

    settings: Settings
    remote: RemoteStore
    cache: LocalCache
    gateway: TMDBClient

    def membership(self, owner_id: str) -> MembershipManager:
        return MembershipManager(
            owner_id,
            self.remote,
            self.gateway,
            default_name=self.settings.default_watchlist_name,
            metadata_concurrency=self.settings.metadata_concurrency,
            local_index=self.local_lists(owner_id),
        )

    def annotations(self) -> AnnotationSynchronizer:
        return AnnotationSynchronizer(
            self.remote,
            self.cache,
            self.gateway,
            metadata_concurrency=self.settings.metadata_concurrency,
        )

    def catalog(self) -> ContentCatalog:
        return ContentCatalog(self.remote)

    def preferences(self) -> PreferenceStore:
        return PreferenceStore(self.cache)

    def local_lists(self, owner_id: str) -> LocalListIndex:
        return LocalListIndex(owner_id, self.cache)


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    app.state.services = ServiceContainer(
        settings=settings,
        remote=RemoteStore(database.session_factory),
        cache=build_cache(settings.local_cache_path),
        gateway=TMDBClient(settings, tmdb_http_client),
    )
    app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Watchlists, notes and preference-driven discovery",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_services(app: FastAPI) -> ServiceContainer:
    services = getattr(app.state, "services", None)
    if not isinstance(services, ServiceContainer):
        raise RuntimeError("Services not initialised")
    return services


@contextmanager
def _service_errors() -> Iterator[None]:
    """Translate service exceptions into HTTP responses."""

    try:
        yield
    except ValidationFailure as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (CollectionNotFound, ContentNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MetadataUnavailable as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except RemoteUnavailable as exc:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "remote_unavailable",
                "description": "Your watchlists could not be reached. Please try again shortly.",
            },
        ) from exc


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/movies")
    async def search_movies(request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            search = ContentSearch.from_query(request.query_params)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        with _service_errors():
            page = await services.catalog().search(search)
        return JSONResponse(page.to_payload())

    @fastapi_app.get("/movies/{movie_id}")
    async def get_movie(movie_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            record = await services.catalog().get(movie_id)
        return JSONResponse(record.to_payload())

    @fastapi_app.patch("/movies/{movie_id}")
    async def update_movie(movie_id: int, request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            update = ContentUpdate.model_validate(await _json_body(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        with _service_errors():
            record = await services.catalog().update(movie_id, update)
        return JSONResponse(record.to_payload())

    @fastapi_app.get("/users/{owner_id}/watchlists")
    async def list_watchlists(owner_id: str) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            collections = await services.membership(owner_id).list_collections()
        return JSONResponse({"watchlists": [c.to_payload() for c in collections]})

    @fastapi_app.post("/users/{owner_id}/watchlists")
    async def create_watchlist(owner_id: str, request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            body = CreateWatchlistRequest.model_validate(await _json_body(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        with _service_errors():
            created = await services.membership(owner_id).create_collection(
                body.name, body.description
            )
        return JSONResponse(created.to_payload(), status_code=201)

    @fastapi_app.delete("/users/{owner_id}/watchlists/{watchlist_id}")
    async def delete_watchlist(owner_id: str, watchlist_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            await services.membership(owner_id).delete_collection(watchlist_id)
        return JSONResponse({"deleted": watchlist_id})

    @fastapi_app.get("/users/{owner_id}/watchlists/{watchlist_id}/items")
    async def list_watchlist_items(owner_id: str, watchlist_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            entries = await services.membership(owner_id).list_members(watchlist_id)
        local_items = services.local_lists(owner_id).items(watchlist_id)
        return JSONResponse(
            {
                "watchlistId": watchlist_id,
                "items": [entry.to_payload() for entry in entries],
                "localItems": local_items,
            }
        )

    @fastapi_app.delete("/users/{owner_id}/watchlists/{watchlist_id}/items/{content_id}")
    async def remove_watchlist_item(
        owner_id: str, watchlist_id: int, content_id: int
    ) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            await services.membership(owner_id).remove_from_collection(
                watchlist_id, content_id
            )
        return JSONResponse({"watchlistId": watchlist_id, "removed": content_id})

    @fastapi_app.get("/users/{owner_id}/watchlist")
    async def default_watchlist(owner_id: str) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            entries = await services.membership(owner_id).load_default_collection()
        return JSONResponse({"items": [entry.to_payload() for entry in entries]})

    @fastapi_app.post("/users/{owner_id}/watchlist/items")
    async def add_watchlist_item(owner_id: str, request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            body = AddItemRequest.model_validate(await _json_body(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        manager = services.membership(owner_id)
        with _service_errors():
            if body.content.media_type == "tv":
                targets = await manager.add_to_local_collections(
                    body.content, body.watchlist_ids
                )
                return JSONResponse({"watchlistIds": targets, "storage": "local"})
            targets = await manager.add_to_collections(body.content, body.watchlist_ids)
        return JSONResponse({"watchlistIds": targets, "storage": "remote"})

    @fastapi_app.get("/users/{owner_id}/watchlist/status/{content_id}")
    async def watchlist_status(owner_id: str, content_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        manager = services.membership(owner_id)
        with _service_errors():
            await manager.refresh_default_membership()
            collections = await manager.collections_containing(content_id)
        return JSONResponse(
            {
                "contentId": content_id,
                "inDefaultWatchlist": manager.is_member(content_id),
                "watchlistIds": collections,
                "localWatchlistIds": services.local_lists(owner_id).collections_for(
                    content_id
                ),
            }
        )

    @fastapi_app.get("/users/{owner_id}/notes")
    async def list_notes(owner_id: str) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            listing = await services.annotations().list_annotations(owner_id)
        return JSONResponse(listing.to_payload())

    @fastapi_app.get("/users/{owner_id}/notes/{content_id}")
    async def load_note(owner_id: str, content_id: int) -> JSONResponse:
        services = get_services(fastapi_app)
        with _service_errors():
            loaded = await services.annotations().load_annotation(owner_id, content_id)
        return JSONResponse(loaded.to_payload())

    @fastapi_app.put("/users/{owner_id}/notes/{content_id}")
    async def save_note(owner_id: str, content_id: int, request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            body = NoteUpdate.model_validate(await _json_body(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        with _service_errors():
            result = await services.annotations().save_annotation(
                owner_id, content_id, body.body
            )
        return JSONResponse(result.to_payload())

    @fastapi_app.get("/users/{owner_id}/preferences")
    async def get_preferences(owner_id: str) -> JSONResponse:
        services = get_services(fastapi_app)
        pref = services.preferences().load(owner_id)
        return JSONResponse(pref.to_storage())

    @fastapi_app.put("/users/{owner_id}/preferences")
    async def save_preferences(owner_id: str, request: Request) -> JSONResponse:
        services = get_services(fastapi_app)
        try:
            pref = PreferenceRecord.model_validate(await _json_body(request))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc
        stored = services.preferences().save(owner_id, pref)
        return JSONResponse(stored.to_storage())

    @fastapi_app.get("/users/{owner_id}/recommendations")
    async def recommendations(owner_id: str, page: int = 1) -> JSONResponse:
        services = get_services(fastapi_app)
        query = services.preferences().compile(owner_id)
        try:
            results = await services.gateway.discover(
                query.endpoint, query.params, page=max(1, page)
            )
        except httpx.HTTPError as exc:
            logger.warning("Discovery request for %s failed: %s", owner_id, exc)
            raise HTTPException(
                status_code=502, detail="Failed to load recommendations."
            ) from exc
        return JSONResponse(
            {
                "query": query.to_payload(),
                "results": [
                    {
                        "id": result.tmdb_id,
                        "title": result.title,
                        "mediaType": result.media_type,
                        "image": services.gateway.image_url(result.poster_path),
                        "releaseDate": result.release_date,
                        "rating": result.average_rating,
                        "genreIds": result.genre_ids,
                    }
                    for result in results
                ],
            }
        )


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
