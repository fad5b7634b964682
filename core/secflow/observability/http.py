"""
Outbound HTTP tracing through httpx event hooks.

Each request made through an instrumented client is logged with its method,
URL, status and latency, and kept as an exchange record in a bounded trace.
Credential-bearing headers and query parameters are masked before anything is
logged or recorded.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MASK = "***"

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "cookie",
        "set-cookie",
        "key",
        "x-apikey",
        "x-api-key",
        "x-auth-token",
    }
)

SENSITIVE_PARAMS = frozenset({"key", "apikey", "api_key", "token", "access_token"})

_STARTED = "secflow.started"


def mask_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    return {
        name: MASK if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def mask_url(url: httpx.URL) -> str:
    if not url.query:
        return str(url)
    params = [
        (name, MASK if name.lower() in SENSITIVE_PARAMS else value)
        for name, value in url.params.multi_items()
    ]
    return str(url.copy_with(params=httpx.QueryParams(params)))


@dataclass
class HttpExchange:
    """One completed request/response pair, already masked."""

    method: str
    url: str
    status: int
    latency_ms: float
    request_headers: dict[str, str]
    response_headers: dict[str, str]
    started_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedDateTime": self.started_at.isoformat(),
            "time": self.latency_ms,
            "request": {
                "method": self.method,
                "url": self.url,
                "headers": [{"name": k, "value": v} for k, v in self.request_headers.items()],
            },
            "response": {
                "status": self.status,
                "headers": [{"name": k, "value": v} for k, v in self.response_headers.items()],
            },
        }


class HttpTrace:
    """Bounded record of exchanges made through the clients it instruments."""

    def __init__(self, maxsize: int = 100):
        self._entries: deque[HttpExchange] = deque(maxlen=maxsize)

    @property
    def entries(self) -> list[HttpExchange]:
        return list(self._entries)

    def event_hooks(self) -> dict[str, list]:
        """Hooks for ``httpx.AsyncClient(event_hooks=...)``."""
        return {"request": [self._on_request], "response": [self._on_response]}

    def instrument(self, client: httpx.AsyncClient) -> httpx.AsyncClient:
        hooks = client.event_hooks
        hooks["request"].append(self._on_request)
        hooks["response"].append(self._on_response)
        client.event_hooks = hooks
        return client

    def to_har(self) -> dict[str, Any]:
        return {
            "log": {
                "version": "1.2",
                "creator": {"name": "secflow", "version": "0.1.0"},
                "entries": [entry.to_dict() for entry in self._entries],
            }
        }

    async def _on_request(self, request: httpx.Request) -> None:
        request.extensions[_STARTED] = time.monotonic()
        logger.debug(
            f"HTTP {request.method} {mask_url(request.url)}",
            extra={"event": "http_request"},
        )

    async def _on_response(self, response: httpx.Response) -> None:
        request = response.request
        started = request.extensions.get(_STARTED, time.monotonic())
        latency_ms = round((time.monotonic() - started) * 1000, 2)
        url = mask_url(request.url)
        self._entries.append(
            HttpExchange(
                method=request.method,
                url=url,
                status=response.status_code,
                latency_ms=latency_ms,
                request_headers=mask_headers(request.headers),
                response_headers=mask_headers(response.headers),
            )
        )
        logger.info(
            f"HTTP {request.method} {url} -> {response.status_code} ({latency_ms}ms)",
            extra={"event": "http_response", "latency_ms": latency_ms},
        )
