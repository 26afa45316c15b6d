"""
File Cache Store

Disk cache for proxied files with:
- Deterministic keys derived from (url, filename)
- Atomic commit of body + metadata pairs
- Freshness TTL checked on lookup
- Periodic background eviction of old entries

Cache structure:
cache_dir/
├── 9e107d9d372bb6826bd81d3542a419d6                 (body)
├── 9e107d9d372bb6826bd81d3542a419d6.meta.json       (metadata)
└── 9e107d9d372bb6826bd81d3542a419d6.1a2b3c4d.part   (write in progress)
"""

import os
import time
import json
import uuid
import hashlib
import asyncio
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional, Tuple

from .errors import CacheWriteError

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"
PART_SUFFIX = ".part"


@dataclass
class CacheEntry:
    """A committed cache entry, with its body file already open for reading."""
    key: str
    content_type: str
    content_disposition: str
    size_bytes: int
    modified_at: float
    body: BinaryIO = field(repr=False)

    def iter_body(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Yield the body in chunks, closing the file when done."""
        try:
            while True:
                chunk = self.body.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.body.close()

    def close(self) -> None:
        self.body.close()


class CacheWriter:
    """
    Sink for one cache entry.

    Bytes go to a private temp file; nothing is visible to lookups until
    commit() renames the body into place and writes the metadata record.
    """

    def __init__(self, store: "FileCacheStore", key: str, content_type: str, content_disposition: str):
        self.key = key
        self.bytes_written = 0
        self._store = store
        self._metadata = {
            "contentType": content_type,
            "contentDisposition": content_disposition,
        }
        self._tmp_path = store.cache_dir / f"{key}.{uuid.uuid4().hex[:8]}{PART_SUFFIX}"
        self._closed = False
        try:
            self._file = open(self._tmp_path, "wb")
        except OSError as e:
            self._closed = True
            raise CacheWriteError(f"Cannot open cache file for {key}: {e}") from e

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, chunk: bytes) -> None:
        if self._closed:
            raise CacheWriteError(f"Cache writer for {self.key} is closed")
        try:
            self._file.write(chunk)
        except OSError as e:
            raise CacheWriteError(f"Cache write failed for {self.key}: {e}") from e
        self.bytes_written += len(chunk)

    def commit(self, expected_length: Optional[int] = None) -> None:
        """
        Persist the body and metadata.

        Args:
            expected_length: Byte count the upstream announced, if any. A
                mismatch means the stream was cut short and the entry is
                discarded.
        """
        if self._closed:
            raise CacheWriteError(f"Cache writer for {self.key} is closed")
        self._closed = True

        body_path = self._store.body_path(self.key)
        meta_path = self._store.meta_path(self.key)
        meta_tmp = self._store.cache_dir / f"{self.key}{META_SUFFIX}.{uuid.uuid4().hex[:8]}{PART_SUFFIX}"

        try:
            self._file.close()
            if expected_length is not None and self.bytes_written != expected_length:
                raise CacheWriteError(
                    f"Short stream for {self.key}: got {self.bytes_written} of {expected_length} bytes"
                )

            # Drop the old metadata first so a reader never pairs it with the new body
            meta_path.unlink(missing_ok=True)
            os.replace(self._tmp_path, body_path)

            with open(meta_tmp, "w", encoding="utf-8") as f:
                json.dump(self._metadata, f)
            os.replace(meta_tmp, meta_path)
        except CacheWriteError:
            self._discard(meta_tmp)
            raise
        except OSError as e:
            self._discard(meta_tmp, body_path)
            raise CacheWriteError(f"Cache commit failed for {self.key}: {e}") from e

        logger.debug(f"[CacheStore] Committed {self.key} ({self.bytes_written} bytes)")

    def abort(self) -> None:
        """Discard everything written so far. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._file.close()
        except OSError:
            pass
        self._discard()

    def _discard(self, *extra: Path) -> None:
        for path in (self._tmp_path, *extra):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[CacheStore] Could not remove {path.name}: {e}")


class FileCacheStore:
    """
    Owns the on-disk cache directory.

    Lookups treat anything short of a complete, fresh (body, metadata) pair
    as a miss. Entries older than the freshness TTL stay on disk until the
    eviction sweep removes them after max_age_seconds.
    """

    def __init__(
        self,
        cache_dir: str = "./cache",
        freshness_seconds: int = 24 * 60 * 60,
        max_age_seconds: int = 2 * 24 * 60 * 60,
    ):
        self.cache_dir = Path(cache_dir)
        self.freshness_seconds = freshness_seconds
        self.max_age_seconds = max_age_seconds

        self._sweep_task: Optional[asyncio.Task] = None

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"[CacheStore] Cache directory: {self.cache_dir}")

    @staticmethod
    def compute_key(url: str, filename: Optional[str] = None) -> str:
        """Derive the cache key for a (url, filename) pair."""
        return hashlib.md5(f"{url}|{filename or ''}".encode("utf-8")).hexdigest()

    def body_path(self, key: str) -> Path:
        return self.cache_dir / key

    def meta_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}{META_SUFFIX}"

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """
        Return the fresh entry for key, or None on a miss.

        Missing files, unreadable files and malformed metadata all count as
        a miss, as does a body older than the freshness TTL.
        """
        body_path = self.body_path(key)
        meta_path = self.meta_path(key)

        try:
            body = open(body_path, "rb")
        except OSError:
            return None

        # Size and age come from the open file so they match the bytes served
        try:
            stat = os.fstat(body.fileno())
        except OSError:
            body.close()
            return None
        metadata = self._read_metadata(key, meta_path, stat.st_mtime)
        if metadata is None:
            body.close()
            return None
        content_type, content_disposition = metadata

        return CacheEntry(
            key=key,
            content_type=content_type,
            content_disposition=content_disposition,
            size_bytes=stat.st_size,
            modified_at=stat.st_mtime,
            body=body,
        )

    def _read_metadata(self, key: str, meta_path: Path, modified_at: float) -> Optional[Tuple[str, str]]:
        age = time.time() - modified_at
        if age > self.freshness_seconds:
            logger.debug(f"[CacheStore] Stale entry {key} ({int(age)}s old)")
            return None

        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                metadata = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug(f"[CacheStore] Metadata unavailable for {key}: {e}")
            return None

        if not isinstance(metadata, dict):
            return None
        content_type = metadata.get("contentType")
        content_disposition = metadata.get("contentDisposition")
        if not isinstance(content_type, str) or not isinstance(content_disposition, str):
            logger.debug(f"[CacheStore] Incomplete metadata for {key}")
            return None
        return content_type, content_disposition

    def open_for_write(self, key: str, content_type: str, content_disposition: str) -> CacheWriter:
        """Start a new entry for key. Raises CacheWriteError if the temp file can't be created."""
        return CacheWriter(self, key, content_type, content_disposition)

    def evict_expired(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Delete entries whose body is older than max_age_seconds.

        Metadata is deleted before its body; if that fails the body is kept
        so the pair can be retried on the next sweep. Errors on one entry
        never stop the sweep.

        Returns:
            Number of entries removed.
        """
        if max_age_seconds is None:
            max_age_seconds = self.max_age_seconds

        now = time.time()
        removed = 0

        try:
            entries = list(os.scandir(self.cache_dir))
        except OSError as e:
            logger.error(f"[CacheStore] Cannot scan cache directory: {e}")
            return 0

        for entry in entries:
            name = entry.name
            try:
                if not entry.is_file():
                    continue
                age = now - entry.stat().st_mtime

                if name.endswith(PART_SUFFIX):
                    # Abandoned by a crashed or killed write
                    if age > max_age_seconds:
                        os.unlink(entry.path)
                    continue

                if name.endswith(META_SUFFIX):
                    # Only removed on its own once its body is already gone
                    body_path = self.body_path(name[: -len(META_SUFFIX)])
                    if age > max_age_seconds and not body_path.exists():
                        os.unlink(entry.path)
                        logger.debug(f"[CacheStore] Removed orphaned metadata {name}")
                    continue

                if age <= max_age_seconds:
                    continue

                try:
                    self.meta_path(name).unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"[CacheStore] Keeping {name}, metadata not removable: {e}")
                    continue

                os.unlink(entry.path)
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.debug(f"[CacheStore] Skipping {name} during sweep: {e}")
                continue

        if removed:
            logger.info(f"[CacheStore] Evicted {removed} expired entries")
        return removed

    def clear(self) -> int:
        """
        Remove every cached entry.

        Returns:
            Number of entries removed.
        """
        removed = 0
        for entry in list(os.scandir(self.cache_dir)):
            name = entry.name
            if name.endswith(META_SUFFIX) or name.endswith(PART_SUFFIX):
                continue
            try:
                self.meta_path(name).unlink(missing_ok=True)
                os.unlink(entry.path)
                removed += 1
            except OSError as e:
                logger.warning(f"[CacheStore] Failed to remove {name}: {e}")

        logger.info(f"[CacheStore] Cleared {removed} entries")
        return removed

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total_entries = 0
        total_size = 0
        for entry in os.scandir(self.cache_dir):
            name = entry.name
            if name.endswith(META_SUFFIX) or name.endswith(PART_SUFFIX):
                continue
            try:
                total_size += entry.stat().st_size
            except OSError:
                continue
            total_entries += 1

        return {
            "total_entries": total_entries,
            "total_size_bytes": total_size,
            "total_size_mb": round(total_size / (1024 * 1024), 2),
            "freshness_seconds": self.freshness_seconds,
            "max_age_seconds": self.max_age_seconds,
        }

    # ============================================
    # Background sweep
    # ============================================

    async def sweep(self, max_age_seconds: Optional[int] = None) -> int:
        """Run evict_expired in a worker thread."""
        return await asyncio.to_thread(self.evict_expired, max_age_seconds)

    async def start_sweep_task(self, interval_seconds: float) -> None:
        """Start the periodic eviction sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))
            logger.info(f"[CacheStore] Sweep task started (every {interval_seconds}s)")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[CacheStore] Sweep failed: {e}", exc_info=True)

    async def stop_sweep_task(self) -> None:
        """Stop the periodic eviction sweep."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            logger.info("[CacheStore] Sweep task stopped")
        self._sweep_task = None
