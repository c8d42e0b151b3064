"""
OCI registry error classes.

Provides a clear taxonomy of errors that can occur while mirroring images.
Errors are mapped from HTTP status codes and local verification failures so
that the transfer engine can classify them without looking at transport
details.
"""
from __future__ import annotations

from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional


class ErrorKind(str, Enum):
    """Outcome classification reported for failed transfers."""
    PARSE = "parse"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    INTEGRITY = "integrity"
    QUOTA_EXCEEDED = "quota_exceeded"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class OciError(Exception):
    """
    Base class for all OCI registry errors.

    Every subclass carries an ``ErrorKind`` so callers can branch on the
    kind rather than on the concrete exception type.
    """
    kind: ErrorKind = ErrorKind.INTERNAL


class OciParseError(OciError, ValueError):
    """Malformed image reference or digest string."""
    kind = ErrorKind.PARSE


class OciAuthError(OciError):
    """
    Authentication or authorization error.

    Raised when:
    - HTTP 401 persists after a forced token refresh
    - HTTP 403 Forbidden (insufficient permissions)
    - Token endpoint rejects the supplied credentials
    """
    kind = ErrorKind.AUTH


class OciNotFound(OciError):
    """
    Resource not found in registry or content store.

    Raised when:
    - HTTP 404 Not Found (manifest, blob, or repository doesn't exist)
    - A digest is requested from the content store but was never staged
    """
    kind = ErrorKind.NOT_FOUND


class OciNetworkError(OciError):
    """
    Connection failure, timeout or server-side (5xx) error.
    """
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class OciDigestMismatch(OciError):
    """
    Content digest validation failed.

    Raised when:
    - a fetched manifest does not hash to the requested or advertised digest
    - a staged blob does not hash to its descriptor digest
    - push_manifest: server digest != locally computed digest
    """
    kind = ErrorKind.INTEGRITY

    def __init__(self, message: str, expected: str | None = None, actual: str | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class OciSizeMismatch(OciDigestMismatch):
    """Blob stream length differs from the descriptor size."""


class OciRateLimited(OciError):
    """
    Rate limit or quota exceeded.

    Raised when:
    - HTTP 429 Too Many Requests
    - Registry error body carries the TOOMANYREQUESTS code (any status)
    """
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class OciValidationError(OciError):
    """
    Registry rejected a request as invalid (4xx other than auth/404/429).
    """
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class OciUnsupportedMediaType(OciValidationError):
    """
    Media type not supported by registry or client.

    Raised when:
    - Source returns a manifest schema this client cannot mirror
    - Registry rejects manifest due to unsupported media type
    """


class OciCancelled(OciError):
    """Operation interrupted by the shared cancellation signal."""
    kind = ErrorKind.CANCELLED


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a ``Retry-After`` header (delta seconds or HTTP date).

    Returns:
        Seconds to wait, or None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_for_status(status: int, message: str,
                     headers: Optional[Mapping[str, str]] = None,
                     code: Optional[str] = None) -> OciError:
    """
    Map an HTTP error status to the matching OCI error.

    Args:
        status: HTTP status code (>= 400)
        message: Human readable context (operation and target)
        headers: Response headers, consulted for Retry-After
        code: First ``errors[].code`` of the registry's JSON error body

    Returns:
        OciError instance (not raised)
    """
    text = f"{message}: HTTP {status}"
    # Some registries report quota exhaustion as 403 TOOMANYREQUESTS
    if status == 429 or code == "TOOMANYREQUESTS":
        retry_after = parse_retry_after((headers or {}).get("Retry-After"))
        return OciRateLimited(text, retry_after=retry_after)
    if status in (401, 403):
        return OciAuthError(text)
    if status == 404:
        return OciNotFound(text)
    if status == 415:
        return OciUnsupportedMediaType(text, status=status)
    if status >= 500 or status == 408:
        return OciNetworkError(text, status=status)
    return OciValidationError(text, status=status)


__all__ = [
    "ErrorKind",
    "OciError",
    "OciParseError",
    "OciAuthError",
    "OciNotFound",
    "OciNetworkError",
    "OciDigestMismatch",
    "OciSizeMismatch",
    "OciRateLimited",
    "OciValidationError",
    "OciUnsupportedMediaType",
    "OciCancelled",
    "error_for_status",
    "parse_retry_after",
]
