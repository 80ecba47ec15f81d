"""
Movie Catalog - Main FastAPI Application
Reads go through the cache coordinator; writes go through the catalog service
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse

from catalog.cache import CacheClient, CacheCoordinator, CacheMeta, InMemoryCacheClient, RedisCacheClient
from catalog.db import init_db, make_engine, make_session_factory
from catalog.errors import (
    CacheUnavailableError,
    CatalogError,
    InvalidationFailure,
    QueryValidationError,
    RecordNotFoundError,
    StoreError,
)
from catalog.query import OperationKind
from catalog.schemas import MovieCreate, MovieRecord, MovieUpdate, ResultSet
from catalog.service import CatalogService
from catalog.store import RecordStoreClient, SqlRecordStore
from config.settings import Settings, settings as default_settings

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "Movie Catalog"

logging.basicConfig(level=default_settings.log_level)
logger = logging.getLogger("catalog.main")

# Most specific first
ERROR_STATUS = [
    (QueryValidationError, 422),
    (RecordNotFoundError, 404),
    (StoreError, 503),
    (CacheUnavailableError, 503),
    (InvalidationFailure, 500),
]


def status_for(error: CatalogError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def build_cache_client(settings: Settings) -> Optional[CacheClient]:
    """Redis when a URL is configured, otherwise an in-process cache."""
    if not settings.cache_enabled:
        return None
    if settings.redis_url:
        return RedisCacheClient(settings.redis_url, timeout=settings.cache_timeout_seconds)
    logger.info("No REDIS_URL configured, using in-process cache")
    return InMemoryCacheClient()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RecordStoreClient] = None,
    cache: Optional[CacheClient] = None,
) -> FastAPI:
    """
    Build the application with its coordinator and service.

    The coordinator is created once here and shared by every request.
    """
    settings = settings or default_settings
    engine = None
    if store is None:
        engine = make_engine(settings.database_url)
        store = SqlRecordStore(
            make_session_factory(engine),
            retry_attempts=settings.store_retry_attempts,
            retry_backoff=settings.store_retry_backoff,
        )
    if cache is None:
        cache = build_cache_client(settings)

    coordinator = CacheCoordinator(store, cache, settings=settings)
    service = CatalogService(store, coordinator, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            init_db(engine)
        yield
        coordinator.close()

    app = FastAPI(
        title=APP_NAME,
        description="Movie listing, search and recommendations with read-through caching",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.service = service

    @app.exception_handler(CatalogError)
    async def catalog_error_handler(request: Request, exc: CatalogError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=status, content=exc.to_response().model_dump())

    app.include_router(_routes())
    return app


def get_service(request: Request) -> CatalogService:
    return request.app.state.service


def get_coordinator(request: Request) -> CacheCoordinator:
    return request.app.state.coordinator


def _with_meta(response: Response, meta: CacheMeta) -> None:
    response.headers["X-Cache"] = meta.cache_source
    if meta.age_seconds is not None:
        response.headers["X-Cache-Age"] = f"{meta.age_seconds:.1f}"


def _routes():
    router = APIRouter()

    @router.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok"}

    @router.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @router.get("/cache/stats")
    def cache_stats(coordinator: CacheCoordinator = Depends(get_coordinator)):
        """Get cache statistics."""
        return coordinator.get_stats()

    @router.post("/cache/clear")
    def cache_clear(coordinator: CacheCoordinator = Depends(get_coordinator)):
        """Drop every cached result."""
        return {"cleared": coordinator.clear()}

    # ===== READS =====

    @router.get("/movies", response_model=ResultSet)
    def list_movies(
        response: Response,
        genre: Optional[List[str]] = Query(None),
        year: Optional[int] = None,
        year_min: Optional[int] = None,
        year_max: Optional[int] = None,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
        service: CatalogService = Depends(get_service),
    ):
        """List movies with optional genre / year filters."""
        result, meta = service.query(OperationKind.LIST, {
            "genre": genre, "year": year, "year_min": year_min, "year_max": year_max,
            "offset": offset, "limit": limit, "sort": sort,
        })
        _with_meta(response, meta)
        return result

    @router.get("/movies/search", response_model=ResultSet)
    def search_movies(
        response: Response,
        q: str = Query(...),
        genre: Optional[List[str]] = Query(None),
        year: Optional[int] = None,
        year_min: Optional[int] = None,
        year_max: Optional[int] = None,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: Optional[str] = None,
        service: CatalogService = Depends(get_service),
    ):
        """Search titles and descriptions (case-insensitive)."""
        result, meta = service.query(OperationKind.SEARCH, {
            "q": q, "genre": genre, "year": year, "year_min": year_min, "year_max": year_max,
            "offset": offset, "limit": limit, "sort": sort,
        })
        _with_meta(response, meta)
        return result

    @router.get("/movies/popular", response_model=ResultSet)
    def popular_movies(response: Response, service: CatalogService = Depends(get_service)):
        """Most popular movies (global list)."""
        result, meta = service.query(OperationKind.POPULAR, {})
        _with_meta(response, meta)
        return result

    @router.get("/movies/recommendations", response_model=ResultSet)
    def recommended_movies(response: Response, service: CatalogService = Depends(get_service)):
        """Top-rated movies (global list)."""
        result, meta = service.query(OperationKind.RECOMMENDATIONS, {})
        _with_meta(response, meta)
        return result

    @router.get("/movies/{movie_id}", response_model=MovieRecord)
    def get_movie(movie_id: str, response: Response, service: CatalogService = Depends(get_service)):
        record, meta = service.get_with_meta(movie_id)
        _with_meta(response, meta)
        return record

    # ===== WRITES =====

    @router.post("/movies", response_model=MovieRecord, status_code=201)
    def create_movie(movie: MovieCreate, service: CatalogService = Depends(get_service)):
        return service.create(movie)

    @router.patch("/movies/{movie_id}", response_model=MovieRecord)
    def update_movie(movie_id: str, changes: MovieUpdate, service: CatalogService = Depends(get_service)):
        return service.update(movie_id, changes)

    @router.delete("/movies/{movie_id}", status_code=204)
    def delete_movie(movie_id: str, service: CatalogService = Depends(get_service)):
        service.delete(movie_id)
        return Response(status_code=204)

    return router


app = create_app()
