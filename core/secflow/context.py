"""
Execution context handed to every component invocation.

The context bundles identifiers plus the two effectful capabilities a
component may use: a logger and a progress emitter. Progress emission is
fire-and-forget: a bounded buffer that drops the oldest event when full, so a
slow observer can never stall a scan.
"""

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import httpx

from secflow.config import (
    DEFAULT_PROGRESS_QUEUE_SIZE,
    get_default_tenant,
    get_http_timeout,
    get_progress_queue_size,
)
from secflow.observability.http import HttpTrace
from secflow.runner import ContainerBackend
from secflow.volumes import VolumeManager, get_volume_manager

logger = logging.getLogger(__name__)


class ProgressLevel(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class ProgressEvent:
    """Advisory progress update. Never required for correctness."""

    message: str
    level: ProgressLevel = ProgressLevel.INFO
    data: Any = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "level": self.level.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


ProgressListener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """
    Bounded, non-blocking progress buffer.

    ``emit`` never raises and never waits. When the buffer is full the oldest
    event is discarded and ``dropped`` is incremented. Inside an event loop,
    listeners run from ``loop.call_soon`` after ``emit`` has returned; without
    one they are called inline. Listeners must not block either way. A failing
    listener is logged and skipped.
    """

    def __init__(self, maxsize: int = DEFAULT_PROGRESS_QUEUE_SIZE):
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._buffer: deque[ProgressEvent] = deque(maxlen=maxsize)
        self._listeners: list[ProgressListener] = []
        self.dropped = 0

    @property
    def maxsize(self) -> int:
        return self._buffer.maxlen or 0

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def emit(
        self,
        message: str,
        level: ProgressLevel | str = ProgressLevel.INFO,
        data: Any = None,
    ) -> None:
        try:
            event = ProgressEvent(message=str(message), level=ProgressLevel(level), data=data)
        except ValueError:
            event = ProgressEvent(message=str(message), level=ProgressLevel.INFO, data=data)

        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)

        if not self._listeners:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._notify(event)
        else:
            loop.call_soon(self._notify, event)

    def _notify(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Progress listener error: {e}")

    def drain(self) -> list[ProgressEvent]:
        """Remove and return all buffered events, oldest first."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    def __len__(self) -> int:
        return len(self._buffer)


class ComponentLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes records with the component label."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        label = (self.extra or {}).get("component_label", "")
        return (f"[{label}] {msg}" if label else msg), kwargs


@dataclass
class ExecutionContext:
    """Per-invocation capability bundle. Owned by the caller, never persisted."""

    run_id: str
    component_ref: str
    tenant_id: str
    logger: logging.LoggerAdapter
    progress: ProgressEmitter
    http: httpx.AsyncClient
    http_trace: HttpTrace = field(default_factory=HttpTrace)
    volumes: VolumeManager = field(default_factory=get_volume_manager)
    containers: ContainerBackend | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    _owns_http: bool = field(default=False, repr=False)

    def emit_progress(
        self,
        message: str,
        level: ProgressLevel | str = ProgressLevel.INFO,
        data: Any = None,
    ) -> None:
        self.progress.emit(message, level=level, data=data)

    async def aclose(self) -> None:
        """Close the HTTP client if this context created it."""
        if self._owns_http and not self.http.is_closed:
            await self.http.aclose()

    async def __aenter__(self) -> "ExecutionContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def create_execution_context(
    component_ref: str,
    *,
    run_id: str | None = None,
    tenant_id: str | None = None,
    component_label: str | None = None,
    http: httpx.AsyncClient | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    progress: ProgressEmitter | None = None,
    volumes: VolumeManager | None = None,
    containers: ContainerBackend | None = None,
    http_timeout: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> ExecutionContext:
    """Build a context for one invocation.

    When ``http`` is not supplied an ``httpx.AsyncClient`` is created over
    ``http_transport`` (the default network transport when None), traced into
    ``context.http_trace`` and closed by ``ExecutionContext.aclose``. A
    supplied client is used as is; the caller may pass it through
    ``HttpTrace.instrument`` first. Unset tenant, timeout and queue size come
    from ~/.secflow/configuration.json.
    """
    owns_http = http is None
    trace = HttpTrace()
    client = http or httpx.AsyncClient(
        transport=http_transport,
        timeout=http_timeout if http_timeout is not None else get_http_timeout(),
        event_hooks=trace.event_hooks(),
    )
    adapter = ComponentLogger(
        logging.getLogger(f"secflow.component.{component_ref}"),
        {"component_label": component_label or component_ref},
    )
    return ExecutionContext(
        run_id=run_id or uuid.uuid4().hex,
        component_ref=component_ref,
        tenant_id=tenant_id or get_default_tenant(),
        logger=adapter,
        progress=progress if progress is not None else ProgressEmitter(get_progress_queue_size()),
        http=client,
        http_trace=trace,
        volumes=volumes if volumes is not None else get_volume_manager(),
        containers=containers,
        metadata=dict(metadata or {}),
        _owns_http=owns_http,
    )
