"""
Source Resolver

Turns a user-supplied URL into an open, streamed upstream response.

Google Drive share links are rewritten to the export=download endpoint.
Large Drive files answer that endpoint with an HTML "can't scan for
viruses" page instead of the file; the resolver submits its confirmation
form with the session cookie Drive issued to get the real body.
"""

import re
import html
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode, urljoin, urlparse

import httpx

from .errors import (
    ConfirmationUnavailableError,
    UpstreamStatusError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
)

logger = logging.getLogger(__name__)

DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}"

DRIVE_SHARE_PATTERNS = [
    re.compile(r"^https://drive\.google\.com/file/d/([A-Za-z0-9_-]+)"),
    re.compile(r"^https://drive\.google\.com/open\?(?:[^#]*&)?id=([A-Za-z0-9_-]+)"),
]

_FORM_RE = re.compile(r'<form[^>]*\bid="download-form"[^>]*>(.*?)</form>', re.IGNORECASE | re.DOTALL)
_ACTION_RE = re.compile(r'\baction="([^"]+)"', re.IGNORECASE)
_HIDDEN_INPUT_RE = re.compile(r'<input[^>]*type="hidden"[^>]*>', re.IGNORECASE)
_NAME_RE = re.compile(r'\bname="([^"]*)"', re.IGNORECASE)
_VALUE_RE = re.compile(r'\bvalue="([^"]*)"', re.IGNORECASE)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "*/*",
}


@dataclass
class UpstreamTarget:
    """The final upstream request and its open (unread) response."""
    url: str
    response: httpx.Response
    headers: Dict[str, str] = field(default_factory=dict)


def extract_drive_file_id(url: str) -> Optional[str]:
    """Return the Drive file id for file/d/{id} or open?id={id} links."""
    for pattern in DRIVE_SHARE_PATTERNS:
        match = pattern.match(url)
        if match:
            return match.group(1)
    return None


def parse_confirmation_form(page: str) -> Optional[Tuple[str, List[Tuple[str, str]]]]:
    """
    Find the download-form action and its hidden inputs in a Drive interstitial.

    Returns:
        (action, [(name, value), ...]) or None if the page has no such form.
    """
    form = _FORM_RE.search(page)
    if form:
        action = _ACTION_RE.search(form.group(0))
        body = form.group(1)
    else:
        action = re.search(r'<form id="download-form" action="([^"]+)"', page)
        body = ""
    if not action:
        return None

    fields = []
    for tag in _HIDDEN_INPUT_RE.findall(body):
        name = _NAME_RE.search(tag)
        value = _VALUE_RE.search(tag)
        if name:
            fields.append((html.unescape(name.group(1)), html.unescape(value.group(1)) if value else ""))

    return html.unescape(action.group(1)), fields


def cookie_header(response: httpx.Response) -> Optional[str]:
    """Collapse every Set-Cookie on response into one Cookie request header."""
    pairs = []
    for raw in response.headers.get_list("set-cookie"):
        pair = raw.split(";", 1)[0].strip()
        if "=" in pair:
            pairs.append(pair)
    return "; ".join(pairs) if pairs else None


class SourceResolver:
    """
    Resolves source URLs to streamed upstream responses.

    Usage:
        resolver = SourceResolver(timeout=60)
        target = await resolver.resolve(url)
        async for chunk in target.response.aiter_bytes():
            ...
        await target.response.aclose()
    """

    def __init__(
        self,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.http_client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
        )

    async def aclose(self) -> None:
        """Close HTTP client."""
        await self.http_client.aclose()

    async def resolve(self, raw_url: str) -> UpstreamTarget:
        """
        Open the final upstream response for raw_url.

        Raises:
            ResolutionError: upstream unreachable, non-success status, or an
                incomplete Drive confirmation handshake.
        """
        file_id = extract_drive_file_id(raw_url)
        if file_id:
            logger.info(f"[Resolver] Google Drive file detected: {file_id}")
            target = await self._resolve_drive(file_id)
        else:
            response = await self._open(raw_url)
            target = UpstreamTarget(url=raw_url, response=response)

        response = target.response
        if not response.is_success:
            await response.aclose()
            reason = response.reason_phrase or f"HTTP {response.status_code}"
            logger.warning(f"[Resolver] Upstream {response.status_code} for {target.url[:80]}")
            raise UpstreamStatusError(response.status_code, reason)

        return target

    async def _resolve_drive(self, file_id: str) -> UpstreamTarget:
        first_url = DRIVE_DOWNLOAD_URL.format(file_id=file_id)
        first = await self._open(first_url)

        content_type = first.headers.get("content-type", "")
        if "text/html" not in content_type.lower():
            return UpstreamTarget(url=first_url, response=first)

        # Interstitial page: read it fully, then submit the confirmation form
        try:
            page = (await first.aread()).decode(first.encoding or "utf-8", errors="replace")
        except httpx.HTTPError as e:
            raise UpstreamUnreachableError(f"Failed to fetch: {e}") from e
        finally:
            await first.aclose()

        form = parse_confirmation_form(page)
        cookies = cookie_header(first)
        if not form or not cookies:
            logger.warning(
                f"[Resolver] Drive confirmation unavailable for {file_id} "
                f"(form={'yes' if form else 'no'}, cookie={'yes' if cookies else 'no'})"
            )
            raise ConfirmationUnavailableError()

        action, fields = form
        confirm_url = urljoin(str(first.url), action)
        if fields and not urlparse(confirm_url).query:
            confirm_url = f"{confirm_url}?{urlencode(fields)}"

        headers = {"Cookie": cookies}
        logger.info(f"[Resolver] Submitting Drive confirmation for {file_id}")
        response = await self._open(confirm_url, headers)
        return UpstreamTarget(url=confirm_url, response=response, headers=headers)

    async def _open(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Send a GET and return the response with its body still unread."""
        try:
            request = self.http_client.build_request("GET", url, headers=headers)
            return await self.http_client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"[Resolver] Timeout: {url[:80]}")
            raise UpstreamTimeoutError("Upstream fetch timed out") from e
        except httpx.InvalidURL as e:
            raise UpstreamUnreachableError(f"Invalid URL: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"[Resolver] Fetch error for {url[:80]}: {e}")
            raise UpstreamUnreachableError(f"Failed to fetch: {e}") from e
