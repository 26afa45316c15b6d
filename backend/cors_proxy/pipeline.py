"""
Proxy Pipeline

Per-request flow:

    compute key -> cache lookup -> HIT: serve stored bytes
                                -> MISS: resolve -> derive -> tee -> commit

Resolution errors become the response. Cache errors are logged and never
reach the client once the live response has started.
"""

import asyncio
import logging
from typing import Optional, Set
from urllib.parse import urlparse

import httpx
from fastapi import BackgroundTasks
from fastapi.responses import StreamingResponse

from .cache_store import CacheWriter, FileCacheStore
from .config import ProxySettings
from .errors import BadRequestError, CacheWriteError
from .filename_deriver import derive
from .source_resolver import SourceResolver
from .stream_tee import StreamTee

logger = logging.getLogger(__name__)


def expected_body_length(response: httpx.Response) -> Optional[int]:
    """Content-Length of an unencoded upstream body, if announced."""
    if response.headers.get("content-encoding", "identity").lower() != "identity":
        return None
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ProxyPipeline:
    """
    Orchestrates cache store, resolver and deriver for /proxy requests.

    Usage:
        pipeline = ProxyPipeline(settings, cache_store, resolver)
        response = await pipeline.handle(url, filename)
        ...
        await pipeline.aclose()
    """

    def __init__(
        self,
        settings: ProxySettings,
        cache_store: FileCacheStore,
        resolver: SourceResolver,
    ):
        self.settings = settings
        self.cache_store = cache_store
        self.resolver = resolver
        self._pumps: Set[asyncio.Task] = set()

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.settings.freshness_seconds}, immutable"

    @property
    def pending_writes(self) -> int:
        return len(self._pumps)

    async def handle(self, url: Optional[str], filename: Optional[str] = None) -> StreamingResponse:
        """
        Serve url (optionally renamed to filename) from cache or upstream.

        Raises:
            BadRequestError: url is missing or not an http(s) URL.
            ResolutionError: the upstream could not be fetched.
        """
        if not url or not url.strip():
            raise BadRequestError("Missing url parameter")
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise BadRequestError("Invalid URL: must be an absolute http:// or https:// URL")
        filename = filename or None

        key = self.cache_store.compute_key(url, filename)

        entry = self.cache_store.lookup(key)
        if entry is not None:
            logger.info(f"[Proxy] Cache HIT {key}: {url[:80]}")
            return StreamingResponse(
                entry.iter_body(self.settings.chunk_size),
                media_type=None,
                headers={
                    "Content-Type": entry.content_type,
                    "Content-Disposition": entry.content_disposition,
                    "Content-Length": str(entry.size_bytes),
                    "Cache-Control": self.cache_control,
                    "X-Cache-Status": "HIT",
                },
            )

        logger.info(f"[Proxy] Cache MISS {key}: {url[:80]}")
        target = await self.resolver.resolve(url)
        response = target.response

        try:
            descriptor = derive(filename, response.headers, url)
        except Exception:
            await response.aclose()
            raise

        writer: Optional[CacheWriter] = None
        try:
            writer = self.cache_store.open_for_write(
                key, descriptor.content_type, descriptor.content_disposition
            )
        except CacheWriteError as e:
            logger.error(f"[Proxy] Serving {key} uncached: {e}")

        tee = StreamTee(
            response.aiter_bytes(self.settings.chunk_size),
            writer,
            on_close=response.aclose,
            expected_length=lambda: expected_body_length(response),
            label=key,
        )
        self._track(tee.start())

        # Frees the client buffer even when the generator never started
        background = BackgroundTasks()
        background.add_task(tee.detach)

        return StreamingResponse(
            tee.client_stream(),
            media_type=None,
            background=background,
            headers={
                "Content-Type": descriptor.content_type,
                "Content-Disposition": descriptor.content_disposition,
                "Cache-Control": self.cache_control,
                "X-Cache-Status": "MISS",
            },
        )

    def _track(self, task: asyncio.Task) -> None:
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight cache writes; cancel whatever is left after timeout."""
        if not self._pumps:
            return
        pending = set(self._pumps)
        done, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"[Proxy] Cancelled {len(still_running)} unfinished cache writes")
            await asyncio.gather(*still_running, return_exceptions=True)

    async def aclose(self, timeout: float = 10.0) -> None:
        await self.drain(timeout)
        await self.resolver.aclose()
