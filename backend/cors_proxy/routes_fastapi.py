"""
File Proxy API Routes

Provides endpoints for:
- Proxying remote files with permissive CORS headers (GET /proxy)
- Cache statistics
- Cache management (cleanup, clear)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel

from .errors import ProxyError
from .pipeline import ProxyPipeline

logger = logging.getLogger(__name__)


# ============================================
# Response Models
# ============================================

class CacheStats(BaseModel):
    total_entries: int
    total_size_bytes: int
    total_size_mb: float
    freshness_seconds: int
    max_age_seconds: int


class CacheStatsResponse(BaseModel):
    success: bool
    stats: CacheStats


class CleanupResponse(BaseModel):
    success: bool
    removed_entries: int
    current_stats: CacheStats


class ClearResponse(BaseModel):
    success: bool
    removed_entries: int
    message: str


class HealthResponse(BaseModel):
    status: str
    service: str
    pending_cache_writes: int
    cache_stats: CacheStats


# ============================================
# Router
# ============================================

router = APIRouter(prefix="/proxy", tags=["File Proxy"])


def get_pipeline(request: Request) -> ProxyPipeline:
    return request.app.state.pipeline


@router.get("", response_class=Response)
@router.get("/", response_class=Response, include_in_schema=False)
async def proxy_file(
    url: Optional[str] = Query(None, description="URL of the file to proxy"),
    filename: Optional[str] = Query(None, description="Filename to serve the file as"),
    pipeline: ProxyPipeline = Depends(get_pipeline),
):
    """
    Fetch a remote file and serve it with CORS headers.

    This endpoint:
    1. Serves the file from the disk cache when a fresh copy exists
    2. Otherwise resolves the URL (including Google Drive share links)
    3. Streams the body to the client while writing it to the cache

    Example:
        GET /proxy?url=https://example.com/report.pdf
        GET /proxy?url=https://drive.google.com/file/d/<id>/view&filename=data.csv
    """
    try:
        return await pipeline.handle(url, filename)
    except ProxyError as e:
        if e.status_code >= 500:
            logger.error(f"[Proxy] {e.status_code} for {(url or '')[:80]}: {e.message}")
        else:
            logger.info(f"[Proxy] {e.status_code} for {(url or '')[:80]}: {e.message}")
        return PlainTextResponse(e.message, status_code=e.status_code)
    except Exception as e:
        logger.error(f"[Proxy] Unexpected error for {(url or '')[:80]}: {e}", exc_info=True)
        message = " ".join(str(e).split()) or type(e).__name__
        return PlainTextResponse(f"Error: {message}", status_code=500)


@router.get("/stats", response_model=CacheStatsResponse)
async def get_cache_stats(pipeline: ProxyPipeline = Depends(get_pipeline)):
    """Get cache statistics."""
    return CacheStatsResponse(success=True, stats=CacheStats(**pipeline.cache_store.get_stats()))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_cache(pipeline: ProxyPipeline = Depends(get_pipeline)):
    """
    Remove entries older than the eviction max-age.

    This also runs periodically in the background, but can be triggered
    manually if needed.
    """
    removed = await pipeline.cache_store.sweep()
    return CleanupResponse(
        success=True,
        removed_entries=removed,
        current_stats=CacheStats(**pipeline.cache_store.get_stats()),
    )


@router.delete("/clear", response_model=ClearResponse)
async def clear_cache(pipeline: ProxyPipeline = Depends(get_pipeline)):
    """
    Clear all cached files.

    Use with caution - this removes every cached entry.
    """
    removed = pipeline.cache_store.clear()
    return ClearResponse(success=True, removed_entries=removed, message="Cache cleared successfully")


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: ProxyPipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        service="cors-file-proxy",
        pending_cache_writes=pipeline.pending_writes,
        cache_stats=CacheStats(**pipeline.cache_store.get_stats()),
    )
