"""
Stream Tee

Splits one upstream byte stream between the live client response and a
cache writer. A single pump task reads the upstream once; each sink
consumes at its own pace and a failure in one never stops the other.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from .cache_store import CacheWriter
from .errors import CacheWriteError

logger = logging.getLogger(__name__)

_EOF = object()


class UpstreamStreamError(Exception):
    """Upstream failed after the response had already started."""


class StreamTee:
    """
    One upstream source, two sinks.

    - Client sink: an unbounded queue drained by client_stream(). A slow
      client only grows the queue, it never blocks the pump. When the
      client goes away the queue is detached and the pump carries on.
    - Cache sink: a CacheWriter fed inline by the pump. Write errors abort
      the writer and are logged; the client keeps receiving data.

    The cache entry is committed only after the upstream is fully read.
    on_close always runs once the pump is done, so the upstream
    connection is released on success, error and cancellation alike.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        writer: Optional[CacheWriter],
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
        expected_length: Optional[Callable[[], Optional[int]]] = None,
        label: str = "",
    ):
        self._source = source
        self._writer = writer
        self._on_close = on_close
        self._expected_length = expected_length
        self._label = label

        self._queue: asyncio.Queue = asyncio.Queue()
        self._client_attached = True
        self._error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None

        self.bytes_read = 0
        self.committed = False

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        """Start pumping. Must be called from a running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._pump())
        return self._task

    async def wait(self) -> None:
        """Wait for the pump to finish (cache committed or discarded)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _pump(self) -> None:
        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self.bytes_read += len(chunk)
                self._write_cache(chunk)
                if self._client_attached:
                    self._queue.put_nowait(chunk)
        except asyncio.CancelledError:
            self._abort_cache("pump cancelled")
            self._error = UpstreamStreamError("Upstream stream cancelled")
            raise
        except Exception as e:
            logger.error(f"[Tee] Upstream failed after {self.bytes_read} bytes {self._label}: {e}")
            self._abort_cache("upstream error")
            self._error = e
        else:
            self._commit_cache()
        finally:
            if self._on_close is not None:
                try:
                    await self._on_close()
                except Exception as e:
                    logger.warning(f"[Tee] Failed to close upstream {self._label}: {e}")
            self._queue.put_nowait(_EOF)

    def _write_cache(self, chunk: bytes) -> None:
        if self._writer is None or self._writer.closed:
            return
        try:
            self._writer.write(chunk)
        except CacheWriteError as e:
            logger.error(f"[Tee] Cache write failed {self._label}: {e}")
            self._writer.abort()

    def _abort_cache(self, reason: str) -> None:
        if self._writer is not None and not self._writer.closed:
            logger.info(f"[Tee] Discarding cache entry {self._label}: {reason}")
            self._writer.abort()

    def _commit_cache(self) -> None:
        if self._writer is None or self._writer.closed:
            return
        expected = self._expected_length() if self._expected_length else None
        try:
            self._writer.commit(expected)
            self.committed = True
            logger.info(f"[Tee] Cached {self.bytes_read} bytes {self._label}")
        except CacheWriteError as e:
            logger.error(f"[Tee] Cache commit failed {self._label}: {e}")

    async def detach(self) -> None:
        """Stop buffering for the client; the pump keeps feeding the cache."""
        self._detach_client()

    def _detach_client(self) -> None:
        self._client_attached = False
        finished = False
        while not self._queue.empty():
            if self._queue.get_nowait() is _EOF:
                finished = True
        if finished:
            self._queue.put_nowait(_EOF)

    async def client_stream(self) -> AsyncIterator[bytes]:
        """
        Yield chunks for the live response.

        Raises:
            UpstreamStreamError: if the upstream broke mid-stream, so the
                server aborts the response instead of ending it cleanly.
        """
        try:
            while True:
                item = await self._queue.get()
                if item is _EOF:
                    break
                yield item
            if self._error is not None:
                raise UpstreamStreamError(str(self._error) or type(self._error).__name__)
        finally:
            # Client finished or disconnected; the pump keeps filling the cache
            self._detach_client()
