"""
Application Factory

Wires settings, cache store, resolver and pipeline into a FastAPI app and
owns the lifecycle of the background tasks.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .cache_store import FileCacheStore
from .config import ProxySettings
from .keepalive import KeepAlivePinger
from .pipeline import ProxyPipeline
from .routes_fastapi import router
from .source_resolver import SourceResolver

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[ProxySettings] = None,
    resolver: Optional[SourceResolver] = None,
) -> FastAPI:
    """
    Build the proxy application.

    Args:
        settings: Defaults to ProxySettings.from_env()
        resolver: Custom resolver (tests inject one with a mock transport)
    """
    settings = settings or ProxySettings.from_env()
    cache_store = FileCacheStore(
        cache_dir=settings.cache_dir,
        freshness_seconds=settings.freshness_seconds,
        max_age_seconds=settings.max_age_seconds,
    )
    resolver = resolver or SourceResolver(timeout=settings.upstream_timeout_seconds)
    pipeline = ProxyPipeline(settings, cache_store, resolver)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await cache_store.start_sweep_task(settings.sweep_interval_seconds)
        pinger = None
        if settings.keep_alive_url:
            pinger = KeepAlivePinger(settings.keep_alive_url, settings.keep_alive_interval_seconds)
            await pinger.start()
        app.state.keep_alive = pinger
        logger.info(f"[App] CORS file proxy ready on port {settings.port}")
        try:
            yield
        finally:
            if pinger is not None:
                await pinger.stop()
            await cache_store.stop_sweep_task()
            await pipeline.aclose()
            logger.info("[App] Shutdown complete")

    app = FastAPI(title="CORS File Proxy", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition", "X-Cache-Status"],
    )
    app.include_router(router)

    @app.get("/")
    async def index():
        return {"status": "ok", "usage": "/proxy?url=<encoded_url>&filename=<optional>"}

    return app
