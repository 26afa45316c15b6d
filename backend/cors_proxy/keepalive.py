"""
Keep-Alive Pinger

Some hosting platforms idle a process that receives no traffic. When a
URL is configured, this task requests it periodically.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class KeepAlivePinger:
    """Periodically GETs a URL until stopped."""

    def __init__(
        self,
        url: str,
        interval_seconds: float = 840,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.interval_seconds = interval_seconds
        self._client = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        self._task: Optional[asyncio.Task] = None
        self.ping_count = 0

    async def ping(self) -> bool:
        try:
            response = await self._client.get(self.url)
            self.ping_count += 1
            logger.debug(f"[KeepAlive] {self.url} -> {response.status_code}")
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"[KeepAlive] Ping failed: {e}")
            return False

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info(f"[KeepAlive] Pinging {self.url} every {self.interval_seconds}s")

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.ping()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[KeepAlive] Unexpected error: {e}")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._client.aclose()
