"""FastAPI application entrypoint.

Builds the attribution service in the lifespan handler, includes the
attribution router and exposes a healthcheck endpoint.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import schemas
from .database import create_db_engine, create_session_factory, init_db
from .deps import Settings, get_settings
from .routers import attribution as attribution_router
from .services.attribution import EventStore, SharedCache, WeightsStore, build_attribution_service
from .stores import RedisSharedCache, SqlEventStore, SqlWeightsStore
from .telemetry import init_sentry

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    event_store: Optional[EventStore] = None,
    shared_cache: Optional[SharedCache] = None,
    weights_store: Optional[WeightsStore] = None,
) -> FastAPI:
    """Build the API.

    Stores default to SQLAlchemy on DATABASE_URL and Redis on REDIS_URL;
    tests pass their own collaborators instead.
    """
    settings = settings or get_settings()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        store, cache, weights = event_store, shared_cache, weights_store
        if store is None:
            engine = create_db_engine(settings.DATABASE_URL)
            init_db(engine)
            session_factory = create_session_factory(engine)
            store = SqlEventStore(session_factory)
            weights = weights or SqlWeightsStore(session_factory)
            logger.info("[STARTUP] SQL event store ready")

        if cache is None and settings.REDIS_URL:
            cache = RedisSharedCache.from_url(settings.REDIS_URL)
            if not await cache.ping():
                # Still usable: the click cache treats every shared error as a miss
                logger.warning("[STARTUP] Redis unreachable at %s, serving from hot tier until it recovers", settings.REDIS_URL)

        service = build_attribution_service(settings, event_store=store, shared_cache=cache, weights_store=weights)
        await service.start()
        app.state.attribution_service = service
        app.state.shared_cache = cache
        logger.info("[STARTUP] Attribution service ready (weights %s)", service.trainer.weights.version)

        try:
            yield
        finally:
            await service.shutdown()
            app.state.attribution_service = None
            if isinstance(cache, RedisSharedCache) and shared_cache is None:
                await cache.close()
            if engine is not None:
                engine.dispose()
            logger.info("[SHUTDOWN] Attribution service stopped")

    app = FastAPI(
        title="clickcredit API",
        version="0.1.0",
        description="Creator revenue attribution: clicks, sales, review and insights.",
        lifespan=lifespan,
    )

    # Trust X-Forwarded-* from the load balancer so request IPs are the visitor's
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", "http://localhost:3000")
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(attribution_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health():
        service = getattr(app.state, "attribution_service", None)
        shared_ok = None
        if service is not None:
            shared_ok = service.cache.stats().shared_available if service.cache.stats().shared_configured else None
        return schemas.HealthResponse(status="ok", service_ready=service is not None, shared_cache=shared_ok)

    return app
