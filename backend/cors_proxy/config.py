"""
Proxy Configuration

All settings come from environment variables so the service can be tuned
on a hosting platform without code changes.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class ProxySettings:
    """Runtime settings for the file proxy."""
    # Server
    host: str = "0.0.0.0"
    port: int = 3000

    # Cache
    cache_dir: str = "./cache"
    freshness_seconds: int = 24 * 60 * 60          # served from cache for 1 day
    max_age_seconds: int = 2 * 24 * 60 * 60        # deleted by the sweep after 2 days
    sweep_interval_seconds: int = 60 * 60

    # Upstream
    upstream_timeout_seconds: int = 60
    chunk_size: int = 64 * 1024

    # Keep-alive ping (disabled unless a URL is configured)
    keep_alive_url: Optional[str] = None
    keep_alive_interval_seconds: int = 14 * 60

    log_level: str = "INFO"

    def __post_init__(self):
        if self.freshness_seconds <= 0:
            raise ValueError("freshness_seconds must be positive")
        if self.max_age_seconds < self.freshness_seconds:
            raise ValueError("max_age_seconds must not be smaller than freshness_seconds")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

    @classmethod
    def from_env(cls) -> "ProxySettings":
        """Build settings from the process environment."""
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
            cache_dir=os.getenv("PROXY_CACHE_DIR", "./cache"),
            freshness_seconds=_env_int("PROXY_CACHE_FRESHNESS_SECONDS", 86400),
            max_age_seconds=_env_int("PROXY_CACHE_MAX_AGE_SECONDS", 172800),
            sweep_interval_seconds=_env_int("PROXY_CACHE_SWEEP_INTERVAL_SECONDS", 3600),
            upstream_timeout_seconds=_env_int("PROXY_UPSTREAM_TIMEOUT_SECONDS", 60),
            chunk_size=_env_int("PROXY_CHUNK_SIZE", 65536),
            keep_alive_url=os.getenv("KEEP_ALIVE_URL") or None,
            keep_alive_interval_seconds=_env_int("KEEP_ALIVE_INTERVAL_SECONDS", 840),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
