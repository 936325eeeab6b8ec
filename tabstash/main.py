"""Tabstash HTTP service.

Builds every service object from one ``ApiConfig`` at startup, exposes the
search, bulk-import and diagnostics routes, and tears everything down on
shutdown.

Usage
    uvicorn tabstash.main:app --port 9010
    tabstash-api
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from . import __version__
from .api.routes import router as api_router
from .common.clock import Clock, SystemClock
from .common.config import ApiConfig
from .common.logging import configure_logging
from .common.metrics import MetricsCollector
from .embedding.cache import EmbeddingCache
from .embedding.client import EmbeddingClient
from .gateway.rate_limiter import RateLimitGateway
from .ingest.enrichment import ContentExtractor, Summarizer, TabEnricher
from .ingest.import_queue import ImportQueueManager
from .search.search_manager import SearchManager
from .store.postgres import PostgresTabStore

logger = structlog.get_logger("tabstash_service")

SERVICE_NAME = "tabstash-api"


@dataclass
class Services:
    """Service objects shared by the routes through ``app.state``."""

    config: ApiConfig
    metrics: MetricsCollector
    gateway: RateLimitGateway
    embedding_cache: EmbeddingCache
    embedding_client: EmbeddingClient
    search_manager: SearchManager
    import_queue: ImportQueueManager
    store: Optional[PostgresTabStore] = None
    extractor: Optional[ContentExtractor] = None
    summarizer: Optional[Summarizer] = None
    enricher: Optional[TabEnricher] = None

    async def close(self) -> None:
        await self.import_queue.stop()
        await self.gateway.close()
        await self.embedding_client.close()
        if self.extractor is not None:
            await self.extractor.close()
        if self.summarizer is not None:
            await self.summarizer.close()
        if self.store is not None:
            await self.store.close()


def build_services(
    config: ApiConfig,
    clock: Optional[Clock] = None,
    metrics: Optional[MetricsCollector] = None,
) -> Services:
    """Wire the production object graph around one PostgreSQL store."""
    clock = clock or SystemClock()
    metrics = metrics or MetricsCollector(SERVICE_NAME)

    gateway = RateLimitGateway.from_config(config, clock=clock, metrics=metrics)
    cache = EmbeddingCache(max_size=config.tabstash_embedding_cache_max_size, clock=clock, metrics=metrics)
    embedding_client = EmbeddingClient(config, gateway, cache, clock=clock, metrics=metrics)
    store = PostgresTabStore.from_config(config)

    extractor = ContentExtractor(config, gateway, clock=clock)
    summarizer = Summarizer(config, gateway)
    enricher = TabEnricher(store, embedding_client, extractor=extractor, summarizer=summarizer)

    search_manager = SearchManager(
        config,
        embedding_client,
        lexical_index=store,
        vector_index=store,
        record_source=store,
        metrics=metrics,
        clock=clock,
    )
    import_queue = ImportQueueManager(
        config,
        importer=store,
        enricher=enricher,
        gateway=gateway,
        clock=clock,
        metrics=metrics,
    )

    return Services(
        config=config,
        metrics=metrics,
        gateway=gateway,
        embedding_cache=cache,
        embedding_client=embedding_client,
        search_manager=search_manager,
        import_queue=import_queue,
        store=store,
        extractor=extractor,
        summarizer=summarizer,
        enricher=enricher,
    )


async def maintain_embedding_cache(cache: EmbeddingCache, max_age: float, interval: float) -> None:
    """Drop query embeddings older than ``max_age`` every ``interval`` seconds.

    Sleeps on the cache's clock so it runs in the same time source as the
    cache timestamps.
    """
    while True:
        await cache.clock.sleep(interval)
        evicted = cache.evict_older_than(max_age)
        if evicted:
            logger.info("Evicted stale query embeddings", evicted=evicted, remaining=len(cache))


def create_app(config: Optional[ApiConfig] = None, services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    - config: Settings; read from the environment when omitted
    - services: Pre-built services (tests); built from ``config`` otherwise
    """
    config = config or (services.config if services else ApiConfig())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        configure_logging(SERVICE_NAME, config.tabstash_log_level, config.tabstash_log_format)
        logger.info("Starting tabstash service", env=config.tabstash_env)

        state = services or build_services(config)
        app.state.services = state
        app.state.config = config
        app.state.metrics_collector = state.metrics
        app.state.gateway = state.gateway
        app.state.embedding_cache = state.embedding_cache
        app.state.search_manager = state.search_manager
        app.state.import_queue = state.import_queue
        app.state.enricher = state.enricher

        await state.import_queue.start()
        maintenance = asyncio.create_task(
            maintain_embedding_cache(
                state.embedding_cache,
                config.tabstash_embedding_cache_max_age_seconds,
                config.tabstash_embedding_cache_purge_interval_seconds,
            )
        )
        logger.info("Tabstash service started successfully")

        yield

        # Shutdown
        logger.info("Shutting down tabstash service")
        maintenance.cancel()
        try:
            await maintenance
        except asyncio.CancelledError:
            pass
        await state.close()
        logger.info("Tabstash service shutdown complete")

    app = FastAPI(
        title="Tabstash",
        description="Saved-tab ingestion and hybrid search",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in config.tabstash_api_cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add processing time header to responses."""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as e:
            logger.error("Unhandled request error", path=request.url.path, error=str(e))
            status_code = 500
            response = JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "detail": str(e)},
            )

        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is not None:
            collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=status_code,
                duration=time.time() - start_time,
            )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        state: Optional[Services] = getattr(request.app.state, "services", None)
        if state is None:
            return JSONResponse(status_code=503, content={"status": "unhealthy", "service": SERVICE_NAME})

        try:
            components = await state.search_manager.health_check()
            store_ok = await state.store.health_check() if state.store is not None else True
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": SERVICE_NAME, "error": str(e)},
            )

        components["store"] = "ok" if store_ok else "unavailable"
        body = {
            "status": "healthy" if store_ok else "unhealthy",
            "service": SERVICE_NAME,
            "components": components,
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is None:
            return Response(content="# No metrics available\n", media_type="text/plain")
        return Response(content=collector.get_metrics(), media_type="text/plain")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "metrics": "/metrics",
                "search": "/api/v1/tabs/search",
                "bulk_import": "/api/v1/tabs/bulk-import-queue",
                "regenerate_embeddings": "/api/v1/tabs/regenerate-embeddings",
                "search_cache": "/api/v1/debug/search-cache",
                "rate_limits": "/api/v1/rate-limits",
            },
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    config = ApiConfig()
    uvicorn.run(
        "tabstash.main:app",
        host=config.tabstash_api_host,
        port=config.tabstash_api_port,
        log_level=config.tabstash_log_level.lower(),
    )


if __name__ == "__main__":
    run()
