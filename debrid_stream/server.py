"""
HTTP Surface for Debrid-Stream
Serves play redirects, availability lookups, stream lists and the debrid catalog.
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic_settings import BaseSettings

from .availability import TorrentDescriptor
from .catalog import DebridCatalog
from .engine import StreamEngine
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    ProviderError,
    RateLimitExceededError,
    ResolveFailedError,
    SchedulerRejectedError,
    ValidationError,
)
from .logging_config import LogContext, setup_logging
from .magnet import normalize_info_hash
from .provider import DebridProvider
from .realdebrid import DEFAULT_BASE_URL, RealDebridClient
from .resolver import PendingReason, TorrentLifecycleResolver
from .response_cache import CACHE_MAX_AGE
from .retry import ClientRateLimiter, RetryConfig, RetryHandler
from .scheduler import AdmissionScheduler
from .storage import create_cache_store
from .streams import CatalogRepository, InMemoryCatalogRepository, StreamListService

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 7000
    public_base_url: str = ""  # prefix for generated play URLs
    static_base_url: str = ""  # where the placeholder videos are served

    # Provider settings
    provider: str = "realdebrid"
    realdebrid_base_url: str = DEFAULT_BASE_URL
    provider_timeout: float = 30.0

    # Scheduler settings
    limit_max_concurrent: int = 20
    limit_queue_size: int = 50

    # Cache settings
    no_cache: bool = False
    cache_backend: str = "memory"  # "memory" or "sqlite"
    cache_db_path: str = "debrid_cache.db"
    stream_ttl: int = 4 * 60 * 60
    stream_empty_ttl: int = 30 * 60
    resolved_url_ttl: int = 60
    availability_ttl: int = 8 * 60 * 60
    availability_empty_ttl: int = 30 * 60

    # Catalog records for the stream lists (JSON list)
    catalog_file: Optional[str] = None

    # Play request rate limit per client IP
    rate_limit_per_second: float = 2.0
    rate_limit_burst: int = 10

    # Retry settings
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 60.0

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def build_provider(settings: Settings) -> DebridProvider:
    if settings.provider == RealDebridClient.key:
        return RealDebridClient(base_url=settings.realdebrid_base_url, timeout=settings.provider_timeout)
    raise ConfigurationError(f"Unknown debrid provider: {settings.provider}")


def build_engine(settings: Settings, provider: Optional[DebridProvider] = None) -> StreamEngine:
    """Construct the engine and everything it owns from settings."""
    provider = provider or build_provider(settings)
    retry_handler = RetryHandler(RetryConfig(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=settings.retry_max_delay,
    ))
    return StreamEngine(
        provider,
        create_cache_store(settings.cache_backend, settings.cache_db_path),
        scheduler=AdmissionScheduler(settings.limit_max_concurrent, settings.limit_queue_size),
        resolver=TorrentLifecycleResolver(provider, retry_handler=retry_handler),
        retry_handler=retry_handler,
        no_cache=settings.no_cache,
        stream_ttl=settings.stream_ttl,
        stream_empty_ttl=settings.stream_empty_ttl,
        resolved_url_ttl=settings.resolved_url_ttl,
        availability_ttl=settings.availability_ttl,
        availability_empty_ttl=settings.availability_empty_ttl,
    )


def build_repository(settings: Settings) -> CatalogRepository:
    if settings.catalog_file:
        return InMemoryCatalogRepository.from_json_file(settings.catalog_file)
    logger.warning("No catalog file configured, stream lists will be empty")
    return InMemoryCatalogRepository()


# =============================================================================
# Helper Functions
# =============================================================================


def sanitize_error_message(error: Exception) -> str:
    """Sanitize error messages to avoid leaking sensitive information."""
    error_str = str(error)
    sensitive_patterns = ["token", "key", "auth", "bearer"]
    error_lower = error_str.lower()
    for pattern in sensitive_patterns:
        if pattern in error_lower:
            return "An internal error occurred. Check server logs for details."
    if len(error_str) > 200:
        return error_str[:200] + "..."
    return error_str


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def parse_file_index(value: str) -> Optional[int]:
    if value in ("null", "undefined", ""):
        return None
    try:
        file_index = int(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid file index: {value}")
    if file_index < 0:
        raise HTTPException(status_code=400, detail=f"Invalid file index: {value}")
    return file_index


def parse_descriptors(hashes: str) -> List[TorrentDescriptor]:
    """Parse "hash[:file_index],..." into descriptors."""
    descriptors = []
    for item in hashes.split(","):
        item = item.strip()
        if not item:
            continue
        info_hash, _, index = item.partition(":")
        descriptors.append(TorrentDescriptor(
            info_hash=normalize_info_hash(info_hash),
            file_index=parse_file_index(index),
        ))
    return descriptors


def placeholder_url(static_base_url: str, reason: PendingReason) -> str:
    return f"{static_base_url.rstrip('/')}/videos/{reason.value}.mp4"


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[StreamEngine] = None,
    repository: Optional[CatalogRepository] = None,
) -> FastAPI:
    """Create the application. Engine and repository default to ones built from settings."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        app.state.activity_log_handler = setup_logging(
            log_level=settings.log_level,
            log_file=settings.log_file,
            log_format=settings.log_format,
            max_file_size_mb=settings.log_max_size_mb,
            backup_count=settings.log_backup_count,
            activity_log_size=settings.activity_log_size,
        )
        logger.info(f"Starting debrid-stream for provider {app.state.engine.provider.key}...")
        await app.state.engine.initialize()

        yield

        await app.state.engine.close()
        logger.info("debrid-stream stopped")

    app = FastAPI(
        title="Debrid-Stream",
        description="Debrid resolution and caching engine for torrent streams",
        version="1.0.0",
        lifespan=lifespan,
    )

    engine = engine or build_engine(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.activity_log_handler = None
    app.state.streams = StreamListService(
        engine,
        repository if repository is not None else build_repository(settings),
        base_url=settings.public_base_url,
    )
    app.state.catalog = DebridCatalog(engine.provider)
    app.state.rate_limiter = ClientRateLimiter(
        rate=settings.rate_limit_per_second,
        burst=settings.rate_limit_burst,
    )

    def get_engine(provider: str) -> StreamEngine:
        if provider != app.state.engine.provider.key:
            raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
        return app.state.engine

    # =========================================================================
    # Health and Monitoring Endpoints
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint with engine statistics."""
        try:
            stats = await app.state.engine.get_stats()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse({
                "status": "unhealthy",
                "message": sanitize_error_message(e),
            }, status_code=500)

        return JSONResponse({"status": "healthy", **stats})

    @app.get("/api/logs")
    async def get_activity_logs(
        limit: int = 100,
        level: Optional[str] = None,
        info_hash: Optional[str] = None,
    ):
        """Get recent activity logs."""
        handler = app.state.activity_log_handler
        if not handler:
            return JSONResponse({"count": 0, "logs": []})

        logs = handler.get_logs(limit=limit, level=level, info_hash=info_hash)
        return JSONResponse({"count": len(logs), "logs": logs})

    # =========================================================================
    # Stream List Endpoints
    # =========================================================================

    async def stream_list(content_type: str, stream_id: str, api_key: Optional[str] = None):
        try:
            response = await app.state.streams.get_streams(content_type, stream_id, api_key=api_key)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except SchedulerRejectedError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail="Bad debrid token") from e
        except Exception as e:
            logger.error(f"Failed request {stream_id}: {e}")
            raise HTTPException(status_code=500, detail=sanitize_error_message(e)) from e

        return JSONResponse(
            response.to_dict(),
            headers={
                "Cache-Control": (
                    f"max-age={response.cache_max_age}, "
                    f"stale-while-revalidate={response.stale_revalidate}, "
                    f"stale-if-error={response.stale_error}, public"
                ),
            },
        )

    @app.get("/stream/{content_type}/{stream_id}.json")
    async def get_streams(content_type: str, stream_id: str):
        """Stream list without debrid tagging."""
        return await stream_list(content_type, stream_id)

    @app.get("/{provider}/{api_key}/stream/{content_type}/{stream_id}.json")
    async def get_debrid_streams(provider: str, api_key: str, content_type: str, stream_id: str):
        """Stream list tagged with the account's cached availability."""
        get_engine(provider)
        return await stream_list(content_type, stream_id, api_key=api_key)

    # =========================================================================
    # Debrid Endpoints
    # =========================================================================

    @app.get("/{provider}/{api_key}/availability")
    async def get_availability(provider: str, api_key: str, hashes: str = ""):
        """Cached state and play URL template per requested hash."""
        engine = get_engine(provider)
        try:
            descriptors = parse_descriptors(hashes)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        if not descriptors:
            return JSONResponse({})

        try:
            tagged = await engine.list_cached_availability(descriptors, api_key)
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail="Bad debrid token") from e
        return JSONResponse(tagged)

    @app.get("/{provider}/{api_key}/catalog")
    async def get_catalog(provider: str, api_key: str, skip: int = 0):
        """Downloaded jobs of the account."""
        get_engine(provider)
        try:
            metas = await app.state.catalog.list_ready_jobs(api_key, skip=skip)
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail="Bad debrid token") from e
        except ProviderError as e:
            logger.error(f"Failed retrieving {provider} catalog: {e}")
            raise HTTPException(status_code=502, detail=sanitize_error_message(e)) from e
        return JSONResponse({"metas": metas, "cacheMaxAge": 0})

    @app.get("/{provider}/{api_key}/meta/{job_id}")
    async def get_meta(provider: str, api_key: str, job_id: str):
        """Playable files of one job."""
        get_engine(provider)
        try:
            meta = await app.state.catalog.get_job_meta(api_key, job_id)
        except AuthenticationError as e:
            raise HTTPException(status_code=401, detail="Bad debrid token") from e
        except ProviderError as e:
            logger.error(f"Failed retrieving {provider} meta {job_id}: {e}")
            raise HTTPException(status_code=502, detail=sanitize_error_message(e)) from e
        return JSONResponse({"meta": meta, "cacheMaxAge": CACHE_MAX_AGE})

    @app.get("/{provider}/{api_key}/{info_hash}/{hint}/{file_index}")
    async def resolve(provider: str, api_key: str, info_hash: str, hint: str, file_index: str, request: Request):
        """Redirect to the direct URL of a torrent file, or to a placeholder video."""
        engine = get_engine(provider)
        index = parse_file_index(file_index)
        ip = client_ip(request)

        try:
            app.state.rate_limiter.check(ip)
        except RateLimitExceededError as e:
            logger.warning(f"Rate limited play request from {ip}")
            raise HTTPException(status_code=429, detail="Too many requests") from e

        static_base = app.state.settings.static_base_url
        with LogContext(operation="resolve", client_ip=ip):
            try:
                result = await engine.resolve_stream(
                    info_hash,
                    index,
                    api_key,
                    cached_file_id_hint=hint,
                    client_ip=ip,
                )
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            except SchedulerRejectedError as e:
                raise HTTPException(status_code=503, detail=str(e)) from e
            except AuthenticationError as e:
                raise HTTPException(status_code=401, detail="Bad debrid token") from e
            except ResolveFailedError as e:
                logger.warning(f"Failed resolving {info_hash} [{index}]: {e}")
                result = PendingReason.UNEXPECTED_FAILURE

        if isinstance(result, PendingReason):
            return RedirectResponse(placeholder_url(static_base, result), status_code=302)
        return RedirectResponse(result, status_code=302)

    return app


app = create_app()
