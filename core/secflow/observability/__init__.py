"""
Observability module for invocation-scoped structured logging.

- Automatic context propagation via ContextVar
- Structured JSON logging for production
- Human-readable logging for development
- Outbound HTTP tracing with credentials masked
"""

from secflow.observability.http import HttpExchange, HttpTrace, mask_headers, mask_url
from secflow.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
    "HttpExchange",
    "HttpTrace",
    "mask_headers",
    "mask_url",
]
