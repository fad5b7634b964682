"""
Classified errors for component execution.

Every failure leaving a component is one of a closed set of kinds. The kind
drives retry decisions; ``details`` carries structured context (field errors,
HTTP status, configuration key) so callers never need to parse messages.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from enum import StrEnum
from typing import Any

import httpx


class ErrorKind(StrEnum):
    """Closed taxonomy of failure kinds."""

    VALIDATION = "ValidationError"
    CONFIGURATION = "ConfigurationError"
    AUTHENTICATION = "AuthenticationError"
    SERVICE = "ServiceError"
    NETWORK = "NetworkError"
    TIMEOUT = "TimeoutError"


NON_RETRYABLE_KINDS = frozenset(
    {ErrorKind.VALIDATION, ErrorKind.CONFIGURATION, ErrorKind.AUTHENTICATION}
)


class ComponentError(Exception):
    """Base class for every classified component error."""

    kind: ErrorKind = ErrorKind.SERVICE

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        retry_delay: float | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})
        self.retry_delay = retry_delay

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging and transport to the caller."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "retry_delay": self.retry_delay,
            "details": self.details,
            "cause": str(self.__cause__) if self.__cause__ is not None else None,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, details={self.details!r})"


class ValidationError(ComponentError):
    """Malformed or missing caller input. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field_errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        if field_errors:
            merged["field_errors"] = {k: list(v) for k, v in field_errors.items()}
        super().__init__(message, details=merged)

    @property
    def field_errors(self) -> dict[str, list[str]]:
        return self.details.get("field_errors", {})


class ConfigurationError(ComponentError):
    """Missing or invalid credentials/setup. Never retried."""

    kind = ErrorKind.CONFIGURATION

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        if config_key:
            merged["config_key"] = config_key
        super().__init__(message, details=merged)

    @property
    def config_key(self) -> str | None:
        return self.details.get("config_key")


class AuthenticationError(ComponentError):
    """Upstream rejected the supplied credentials. Never retried."""

    kind = ErrorKind.AUTHENTICATION


class _StatusError(ComponentError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        retry_delay: float | None = None,
    ):
        merged = dict(details or {})
        if status_code is not None:
            merged["status_code"] = status_code
        super().__init__(message, details=merged, retry_delay=retry_delay)

    @property
    def status_code(self) -> int | None:
        return self.details.get("status_code")


class ServiceError(_StatusError):
    """Upstream tool, API or container backend failed. Retryable."""

    kind = ErrorKind.SERVICE


class NetworkError(_StatusError):
    """Transport failure reaching an upstream service. Retryable."""

    kind = ErrorKind.NETWORK


class ComponentTimeoutError(ComponentError):
    """A deadline was exceeded. Retryable."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = dict(details or {})
        if timeout_seconds is not None:
            merged["timeout_seconds"] = timeout_seconds
        super().__init__(message, details=merged)


ERROR_CLASSES: dict[ErrorKind, type[ComponentError]] = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.CONFIGURATION: ConfigurationError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.SERVICE: ServiceError,
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.TIMEOUT: ComponentTimeoutError,
}


# ---------------------------------------------------------------------------
# HTTP classification
# ---------------------------------------------------------------------------


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def classify_http_status(
    status_code: int,
    body: str = "",
    headers: dict[str, str] | httpx.Headers | None = None,
    *,
    service: str = "Upstream API",
) -> ComponentError:
    """Map an HTTP error status onto the taxonomy.

    Shared by every HTTP-backed component so they all fail the same way.
    Components that treat 404 as a neutral result must check for it before
    calling this.
    """
    headers = headers or {}
    snippet = body[:500] if body else ""
    suffix = f": {snippet}" if snippet else ""
    details: dict[str, Any] = {"status_code": status_code}
    if snippet:
        details["body"] = snippet

    if status_code == 401:
        return AuthenticationError(f"{service} rejected the credentials (HTTP 401)", details=details)
    if status_code == 403:
        return AuthenticationError(f"{service} denied access (HTTP 403){suffix}", details=details)
    if status_code == 404:
        details["not_found"] = True
        return ValidationError(f"{service} resource not found (HTTP 404)", details=details)
    if status_code == 408:
        return ComponentTimeoutError(f"{service} request timed out (HTTP 408)", details=details)
    if status_code == 429:
        retry_after = parse_retry_after(headers.get("retry-after") or headers.get("Retry-After"))
        return ServiceError(
            f"{service} rate limit exceeded (HTTP 429)",
            status_code=status_code,
            details=details,
            retry_delay=retry_after,
        )
    if 400 <= status_code < 500:
        return ValidationError(f"{service} rejected the request (HTTP {status_code}){suffix}", details=details)
    if status_code >= 500:
        return ServiceError(f"{service} error (HTTP {status_code}){suffix}", details=details)
    return ServiceError(f"{service} returned unexpected HTTP {status_code}{suffix}", details=details)


def raise_for_status(response: httpx.Response, *, service: str = "Upstream API") -> None:
    """Raise the classified error for a non-2xx response."""
    if response.is_success:
        return
    try:
        body = response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        body = ""
    raise classify_http_status(response.status_code, body, response.headers, service=service)


# ---------------------------------------------------------------------------
# Boundary wrapping
# ---------------------------------------------------------------------------

_NETWORK_PATTERNS = (
    "econnrefused",
    "econnreset",
    "enotfound",
    "eai_again",
    "connection refused",
    "connection reset",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
)

_TIMEOUT_PATTERNS = ("timed out", "timeout", "aborted")


def wrap_error(exc: BaseException, context: str | None = None) -> ComponentError:
    """Classify an arbitrary exception.

    Classified errors pass through untouched; anything else becomes the
    closest kind, falling back to ServiceError, with the original chained as
    ``__cause__``.
    """
    if isinstance(exc, ComponentError):
        return exc

    prefix = f"{context}: " if context else ""
    text = str(exc) or type(exc).__name__
    lowered = text.lower()

    wrapped: ComponentError
    if isinstance(exc, httpx.HTTPStatusError):
        wrapped = classify_http_status(
            exc.response.status_code, exc.response.text, exc.response.headers
        )
    elif isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        wrapped = ComponentTimeoutError(f"{prefix}{text}")
    elif isinstance(exc, httpx.TransportError):
        wrapped = NetworkError(f"{prefix}{text}")
    elif isinstance(exc, ConnectionError) or any(p in lowered for p in _NETWORK_PATTERNS):
        wrapped = NetworkError(f"{prefix}{text}")
    elif any(p in lowered for p in _TIMEOUT_PATTERNS):
        wrapped = ComponentTimeoutError(f"{prefix}{text}")
    else:
        wrapped = ServiceError(f"{prefix}{text}", details={"exception_type": type(exc).__name__})

    wrapped.__cause__ = exc
    return wrapped


def is_retryable(exc: BaseException) -> bool:
    """Whether the exception's kind is retryable by convention."""
    return wrap_error(exc).retryable


def error_kind(exc: BaseException) -> ErrorKind:
    return exc.kind if isinstance(exc, ComponentError) else ErrorKind.SERVICE
