"""
CORS 文件代理测试配置文件

这个文件包含 pytest fixtures（测试夹具）：
- 临时缓存目录和 FileCacheStore
- 基于 httpx.MockTransport 的假上游服务器
- 基于 httpx.ASGITransport 的应用客户端

所有上游请求都由 MockTransport 处理，测试不会访问真实网络。
"""

import os
import sys
import time
from pathlib import Path
from typing import Callable

import httpx
import pytest

# 添加 backend 目录到 Python 路径
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from cors_proxy.app import create_app
from cors_proxy.cache_store import FileCacheStore
from cors_proxy.config import ProxySettings
from cors_proxy.source_resolver import SourceResolver


FRESHNESS_SECONDS = 86400
MAX_AGE_SECONDS = 172800


# ============================================
# Cache Fixtures
# ============================================

@pytest.fixture
def cache_dir(tmp_path):
    """每个测试使用独立的缓存目录"""
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def cache_store(cache_dir):
    """默认 TTL（1 天新鲜，2 天淘汰）的缓存存储"""
    return FileCacheStore(
        cache_dir=str(cache_dir),
        freshness_seconds=FRESHNESS_SECONDS,
        max_age_seconds=MAX_AGE_SECONDS,
    )


@pytest.fixture
def settings(cache_dir):
    return ProxySettings(
        cache_dir=str(cache_dir),
        freshness_seconds=FRESHNESS_SECONDS,
        max_age_seconds=MAX_AGE_SECONDS,
        chunk_size=4,
    )


# ============================================
# Upstream / App Fixtures
# ============================================

@pytest.fixture
def make_resolver():
    """
    根据处理函数创建一个 SourceResolver。

    使用方式：
    ```python
    resolver = make_resolver(lambda request: httpx.Response(200, content=b"hi"))
    ```
    """
    created = []

    def factory(handler: Callable) -> SourceResolver:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(handler),
            follow_redirects=True,
        )
        resolver = SourceResolver(client=client)
        created.append(resolver)
        return resolver

    return factory


@pytest.fixture
def make_client(settings, make_resolver):
    """
    创建连接到代理应用的 httpx 客户端，上游由 handler 模拟。

    返回 (client, app)，测试结束前需要 `async with client`。
    """

    def factory(handler: Callable):
        app = create_app(settings, resolver=make_resolver(handler))
        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://proxy.test",
        )
        return client, app

    return factory


# ============================================
# Helper Functions
# ============================================

def age_file(path: Path, seconds: float) -> None:
    """把文件的修改时间调到 seconds 秒之前"""
    past = time.time() - seconds
    os.utime(path, (past, past))


def write_entry(store: FileCacheStore, key: str, body: bytes,
                content_type: str = "application/pdf",
                content_disposition: str = 'attachment; filename="a.pdf"') -> None:
    """通过 CacheWriter 写入一条完整的缓存"""
    writer = store.open_for_write(key, content_type, content_disposition)
    writer.write(body)
    writer.commit()
