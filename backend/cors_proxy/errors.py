"""
Proxy Errors

Every error that can end a request carries the HTTP status and the one-line
plain-text message the client receives.
"""

from typing import Optional


class ProxyError(Exception):
    """Base class for errors surfaced to the client."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequestError(ProxyError):
    """A required query parameter is missing or invalid."""
    status_code = 400


class ResolutionError(ProxyError):
    """The source URL could not be turned into a usable upstream response."""
    status_code = 502


class UpstreamStatusError(ResolutionError):
    """Upstream answered with a non-success status, forwarded verbatim."""

    def __init__(self, status_code: int, reason: str):
        super().__init__(f"Failed to fetch: {reason}", status_code)
        self.reason = reason


class UpstreamUnreachableError(ResolutionError):
    status_code = 502


class UpstreamTimeoutError(ResolutionError):
    status_code = 504


class ConfirmationUnavailableError(ResolutionError):
    """Google Drive asked for confirmation but the page lacked a form or cookie."""
    status_code = 404

    def __init__(self, message: str = "Google Drive file not found or confirmation failed."):
        super().__init__(message)


class CacheWriteError(Exception):
    """A cache entry could not be written. Never shown to the client."""
