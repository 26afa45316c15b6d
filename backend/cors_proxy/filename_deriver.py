"""
Filename / Content-Type Deriver

Picks the filename and headers a proxied file is served with.

Filename sources, first match wins:
1. Explicit ?filename= parameter
2. filename*= (RFC 5987 extended form) in upstream Content-Disposition
3. filename= (quoted or token form) in upstream Content-Disposition
4. Last path segment of the source URL
5. "downloaded-file"
"""

import re
import mimetypes
import logging
from dataclasses import dataclass
from typing import Callable, List, Mapping, Optional
from urllib.parse import quote, unquote, urlparse

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
FALLBACK_FILENAME = "downloaded-file"

# Preferred extensions where mimetypes would pick something unusual
EXTENSION_MAP = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/x-icon": ".ico",
    "text/plain": ".txt",
    "text/html": ".html",
    "text/csv": ".csv",
    "application/json": ".json",
    "application/pdf": ".pdf",
    "application/zip": ".zip",
    "application/octet-stream": ".bin",
    "audio/mpeg": ".mp3",
    "video/mp4": ".mp4",
}

_EXTENDED_FILENAME_RE = re.compile(
    r"filename\*\s*=\s*([\w!#$%&+^`{}~-]+)'[^']*'([^;\s]+)", re.IGNORECASE
)
_QUOTED_FILENAME_RE = re.compile(r'(?<![*\w])filename\s*=\s*"((?:[^"\\]|\\.)*)"', re.IGNORECASE)
_TOKEN_FILENAME_RE = re.compile(r"(?<![*\w])filename\s*=\s*([^\";\s]+)", re.IGNORECASE)


@dataclass
class ResponseDescriptor:
    """Headers a proxied file is served with, also stored as cache metadata."""
    content_type: str
    filename: str
    content_disposition: str


# ============================================
# Content-Disposition parsers
# ============================================

def parse_extended_filename(disposition: str) -> Optional[str]:
    """Decode filename*=charset'lang'percent-encoded-value."""
    match = _EXTENDED_FILENAME_RE.search(disposition)
    if not match:
        return None
    charset, value = match.group(1), match.group(2).strip('"')
    try:
        return unquote(value, encoding=charset, errors="strict")
    except (LookupError, UnicodeDecodeError) as e:
        logger.debug(f"[Deriver] Undecodable filename* value {value!r}: {e}")
        return None


def parse_quoted_filename(disposition: str) -> Optional[str]:
    """Read filename="..." (with backslash escapes) or a bare filename=token."""
    match = _QUOTED_FILENAME_RE.search(disposition)
    if match:
        return re.sub(r"\\(.)", r"\1", match.group(1))
    match = _TOKEN_FILENAME_RE.search(disposition)
    if match:
        return match.group(1)
    return None


DISPOSITION_PARSERS: List[Callable[[str], Optional[str]]] = [
    parse_extended_filename,
    parse_quoted_filename,
]


def filename_from_disposition(disposition: Optional[str]) -> Optional[str]:
    if not disposition:
        return None
    for parser in DISPOSITION_PARSERS:
        try:
            name = parser(disposition)
        except Exception as e:
            logger.debug(f"[Deriver] {parser.__name__} failed on {disposition!r}: {e}")
            continue
        if name and name.strip():
            return name.strip()
    return None


def filename_from_url(url: str) -> Optional[str]:
    """Last path segment of url ignoring trailing slashes, percent-decoded."""
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    segment = path.rstrip("/").rsplit("/", 1)[-1]
    if not segment:
        return None
    return unquote(segment) or None


# ============================================
# Extension and header helpers
# ============================================

def extension_for(content_type: str) -> Optional[str]:
    """Map a content type (parameters ignored) to a file extension like '.png'."""
    mime = content_type.split(";")[0].strip().lower()
    if not mime:
        return None
    return EXTENSION_MAP.get(mime) or mimetypes.guess_extension(mime)


def build_content_disposition(filename: str) -> str:
    """
    Build an attachment header carrying both filename forms.

    The quoted form is restricted to printable ASCII so the header stays
    latin-1 encodable; the extended form carries the exact UTF-8 name.
    """
    simple = "".join(ch if 32 <= ord(ch) < 127 else "_" for ch in filename)
    simple = simple.replace("\\", "\\\\").replace('"', '\\"')
    encoded = quote(filename, safe="!~*()")
    return f"attachment; filename=\"{simple}\"; filename*=UTF-8''{encoded}"


def derive(
    explicit_filename: Optional[str],
    response_headers: Mapping[str, str],
    source_url: str,
) -> ResponseDescriptor:
    """
    Derive the content type, filename and Content-Disposition for a response.

    Args:
        explicit_filename: Filename requested by the caller, if any
        response_headers: Upstream response headers (case-insensitive mapping)
        source_url: The URL the client originally asked for
    """
    content_type = response_headers.get("content-type") or DEFAULT_CONTENT_TYPE

    candidates = (
        lambda: explicit_filename.strip() if explicit_filename else None,
        lambda: filename_from_disposition(response_headers.get("content-disposition")),
        lambda: filename_from_url(source_url),
    )
    filename = FALLBACK_FILENAME
    for candidate in candidates:
        name = candidate()
        if name:
            filename = name
            break

    if "." not in filename:
        ext = extension_for(content_type)
        if ext:
            filename += ext

    return ResponseDescriptor(
        content_type=content_type,
        filename=filename,
        content_disposition=build_content_disposition(filename),
    )
