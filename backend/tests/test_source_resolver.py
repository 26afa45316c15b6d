"""
SourceResolver 测试

上游由 httpx.MockTransport 模拟，覆盖：
- 直接获取普通 URL
- Google Drive 链接识别与 export=download 改写
- Drive 大文件确认页（表单 + Cookie）握手
- 上游错误到 ResolutionError 的映射

运行测试：
    cd backend
    pytest tests/test_source_resolver.py -v
"""

import httpx
import pytest

from cors_proxy.errors import (
    ConfirmationUnavailableError,
    UpstreamStatusError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
)
from cors_proxy.source_resolver import (
    cookie_header,
    extract_drive_file_id,
    parse_confirmation_form,
)

FILE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz0123"

INTERSTITIAL_PAGE = """
<html><body>
<p>Google Drive can't scan this file for viruses.</p>
<form id="download-form" action="/uc?export=download&amp;id={id}&amp;confirm=t" method="post">
<input type="submit" value="Download anyway">
</form>
</body></html>
""".format(id=FILE_ID)

USERCONTENT_PAGE = """
<form id="download-form" action="https://drive.usercontent.google.com/download" method="get">
<input type="submit" id="uc-download-link" value="Download anyway">
<input type="hidden" name="id" value="{id}">
<input type="hidden" name="export" value="download">
<input type="hidden" name="confirm" value="t">
<input type="hidden" name="uuid" value="abc-123">
</form>
""".format(id=FILE_ID)


async def read_body(target) -> bytes:
    try:
        return await target.response.aread()
    finally:
        await target.response.aclose()


# ============================================
# 1. 辅助函数测试
# ============================================

class TestHelpers:
    """URL 识别与页面解析"""

    @pytest.mark.parametrize("url", [
        f"https://drive.google.com/file/d/{FILE_ID}/view",
        f"https://drive.google.com/file/d/{FILE_ID}/view?usp=sharing",
        f"https://drive.google.com/file/d/{FILE_ID}",
        f"https://drive.google.com/open?id={FILE_ID}",
        f"https://drive.google.com/open?usp=sharing&id={FILE_ID}",
    ])
    def test_drive_patterns(self, url):
        """测试：两种 Drive 分享链接都能提取文件 ID"""
        assert extract_drive_file_id(url) == FILE_ID

    @pytest.mark.parametrize("url", [
        "https://example.com/file/d/abc/view",
        f"https://drive.google.com/uc?export=download&id={FILE_ID}",
        "https://docs.google.com/document/d/abc/edit",
    ])
    def test_non_drive_urls(self, url):
        assert extract_drive_file_id(url) is None

    def test_parse_relative_form(self):
        """测试：旧版确认页的相对 action，HTML 实体被还原"""
        action, fields = parse_confirmation_form(INTERSTITIAL_PAGE)
        assert action == f"/uc?export=download&id={FILE_ID}&confirm=t"
        assert fields == []

    def test_parse_usercontent_form(self):
        """测试：新版确认页的绝对 action 和隐藏字段"""
        action, fields = parse_confirmation_form(USERCONTENT_PAGE)
        assert action == "https://drive.usercontent.google.com/download"
        assert ("id", FILE_ID) in fields
        assert ("uuid", "abc-123") in fields

    def test_parse_page_without_form(self):
        assert parse_confirmation_form("<html>Sorry, the file does not exist.</html>") is None

    def test_cookie_header_joins_set_cookies(self):
        response = httpx.Response(200, headers=[
            ("Set-Cookie", "download_warning_123=abc; Path=/; Secure"),
            ("Set-Cookie", "NID=xyz; HttpOnly"),
        ])
        assert cookie_header(response) == "download_warning_123=abc; NID=xyz"
        assert cookie_header(httpx.Response(200)) is None


# ============================================
# 2. 普通 URL 测试
# ============================================

class TestDirectFetch:
    """非 Drive 链接直接获取"""

    @pytest.mark.asyncio
    async def test_direct_fetch(self, make_resolver):
        """测试：普通 URL 原样请求"""
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, content=b"hello", headers={"Content-Type": "text/plain"})

        resolver = make_resolver(handler)
        target = await resolver.resolve("https://example.com/hello.txt")

        assert seen == ["https://example.com/hello.txt"]
        assert target.url == "https://example.com/hello.txt"
        assert target.headers == {}
        assert await read_body(target) == b"hello"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_redirects_are_followed(self, make_resolver):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(302, headers={"Location": "https://example.com/new"})
            return httpx.Response(200, content=b"moved")

        resolver = make_resolver(handler)
        target = await resolver.resolve("https://example.com/old")
        assert await read_body(target) == b"moved"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_upstream_status_forwarded(self, make_resolver):
        """测试：上游非 2xx 状态码原样带出"""
        resolver = make_resolver(lambda request: httpx.Response(403, content=b"denied"))

        with pytest.raises(UpstreamStatusError) as exc_info:
            await resolver.resolve("https://example.com/secret")

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Failed to fetch: Forbidden"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_502(self, make_resolver):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        resolver = make_resolver(handler)
        with pytest.raises(UpstreamUnreachableError) as exc_info:
            await resolver.resolve("https://down.example.com/")
        assert exc_info.value.status_code == 502
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_504(self, make_resolver):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        resolver = make_resolver(handler)
        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await resolver.resolve("https://slow.example.com/")
        assert exc_info.value.status_code == 504
        await resolver.aclose()


# ============================================
# 3. Google Drive 测试
# ============================================

class TestDrive:
    """Drive 分享链接解析"""

    @pytest.mark.asyncio
    async def test_share_link_equals_direct_download(self, make_resolver):
        """测试：file/d/<id>/view 与直接请求 uc?export=download&id=<id> 结果相同"""
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, content=b"drive bytes", headers={
                "Content-Type": "application/pdf",
                "Content-Disposition": 'attachment; filename="paper.pdf"',
            })

        resolver = make_resolver(handler)
        via_share = await resolver.resolve(f"https://drive.google.com/file/d/{FILE_ID}/view")
        direct = await resolver.resolve(f"https://drive.google.com/uc?export=download&id={FILE_ID}")

        assert requested[0] == requested[1] == f"https://drive.google.com/uc?export=download&id={FILE_ID}"
        assert via_share.url == direct.url
        assert via_share.response.headers["content-disposition"] == direct.response.headers["content-disposition"]
        assert await read_body(via_share) == await read_body(direct) == b"drive bytes"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_confirmation_handshake(self, make_resolver):
        """测试：确认页 -> 带 Cookie 请求确认地址 -> 得到文件"""
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.params.get("confirm") == "t":
                return httpx.Response(200, content=b"big file", headers={"Content-Type": "application/zip"})
            return httpx.Response(
                200,
                text=INTERSTITIAL_PAGE,
                headers=[
                    ("Content-Type", "text/html; charset=utf-8"),
                    ("Set-Cookie", "download_warning=token123; Path=/"),
                ],
            )

        resolver = make_resolver(handler)
        target = await resolver.resolve(f"https://drive.google.com/open?id={FILE_ID}")

        assert len(requests) == 2
        assert str(requests[1].url) == f"https://drive.google.com/uc?export=download&id={FILE_ID}&confirm=t"
        assert requests[1].headers["cookie"] == "download_warning=token123"
        assert target.headers == {"Cookie": "download_warning=token123"}
        assert await read_body(target) == b"big file"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_usercontent_form_fields_become_query(self, make_resolver):
        """测试：新版确认页的隐藏字段拼接成查询参数"""
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.host == "drive.usercontent.google.com":
                return httpx.Response(200, content=b"ok")
            return httpx.Response(200, text=USERCONTENT_PAGE, headers=[
                ("Content-Type", "text/html"),
                ("Set-Cookie", "NID=1; Path=/"),
            ])

        resolver = make_resolver(handler)
        target = await resolver.resolve(f"https://drive.google.com/file/d/{FILE_ID}/view")

        confirm = requests[1].url
        assert confirm.host == "drive.usercontent.google.com"
        assert confirm.params["id"] == FILE_ID
        assert confirm.params["uuid"] == "abc-123"
        assert await read_body(target) == b"ok"
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_missing_cookie_fails(self, make_resolver):
        """测试：确认页没有 Cookie 时返回 404 类错误"""
        resolver = make_resolver(lambda request: httpx.Response(
            200, text=INTERSTITIAL_PAGE, headers={"Content-Type": "text/html"}
        ))

        with pytest.raises(ConfirmationUnavailableError) as exc_info:
            await resolver.resolve(f"https://drive.google.com/file/d/{FILE_ID}/view")
        assert exc_info.value.status_code == 404
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_missing_form_fails(self, make_resolver):
        """测试：页面没有确认表单时返回 404 类错误"""
        resolver = make_resolver(lambda request: httpx.Response(
            200,
            text="<html>Not found</html>",
            headers=[("Content-Type", "text/html"), ("Set-Cookie", "a=b")],
        ))

        with pytest.raises(ConfirmationUnavailableError):
            await resolver.resolve(f"https://drive.google.com/file/d/{FILE_ID}/view")
        await resolver.aclose()

    @pytest.mark.asyncio
    async def test_confirmed_download_error_status(self, make_resolver):
        """测试：确认后的请求失败时带出上游状态码"""
        def handler(request):
            if request.url.params.get("confirm"):
                return httpx.Response(429)
            return httpx.Response(200, text=INTERSTITIAL_PAGE, headers=[
                ("Content-Type", "text/html"),
                ("Set-Cookie", "download_warning=x"),
            ])

        resolver = make_resolver(handler)
        with pytest.raises(UpstreamStatusError) as exc_info:
            await resolver.resolve(f"https://drive.google.com/file/d/{FILE_ID}/view")
        assert exc_info.value.status_code == 429
        await resolver.aclose()
