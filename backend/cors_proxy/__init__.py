"""
CORS File Proxy Module

Fetches remote files on behalf of browser clients and re-serves them with
permissive CORS headers.

Features:
- Google Drive share links, including the large-file confirmation page
- Disk cache with freshness TTL and background eviction
- Body streamed to the client and the cache at the same time
"""

from .app import create_app
from .cache_store import FileCacheStore, CacheEntry, CacheWriter
from .config import ProxySettings
from .pipeline import ProxyPipeline
from .routes_fastapi import router
from .source_resolver import SourceResolver, UpstreamTarget

__all__ = [
    "create_app",
    "router",
    "FileCacheStore",
    "CacheEntry",
    "CacheWriter",
    "ProxySettings",
    "ProxyPipeline",
    "SourceResolver",
    "UpstreamTarget",
]
