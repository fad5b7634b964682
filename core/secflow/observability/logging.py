"""
Invocation-scoped logging.

``invoke_component`` puts the run, component and tenant ids into a
ContextVar; both formatters read it, so a plain ``logger.info()`` anywhere
below a component (runner, volume manager, HTTP client) is attributed to the
invocation that caused it. ContextVars follow asyncio tasks, so concurrent
invocations on one event loop do not bleed into each other.

    invoke_component()      sets run_id, component_id, tenant_id
        execute()
            run_component() / VolumeManager / httpx
                logger.info(...)   record carries the ids
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# Matches both \x1b[...m and \033[...m colour sequences
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# ``extra=`` keys the runtime emits; copied into JSON output when present
_EXTRA_FIELDS = ("event", "latency_ms", "exit_code", "volume", "image", "attempt")


def strip_ansi_codes(text: str) -> str:
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Coloured single-line output for a terminal.

    Example: ``[INFO    ] [tenant:acme | run:5f3a9c21 | component:secflow.dnsx.run] msg``
    """

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _prefix(context: dict[str, Any]) -> str:
        parts = []
        if context.get("tenant_id"):
            parts.append(f"tenant:{context['tenant_id']}")
        if context.get("run_id"):
            # Last 8 chars are enough to tell runs apart on screen
            parts.append(f"run:{context['run_id'][-8:]}")
        if context.get("component_id"):
            parts.append(f"component:{context['component_id']}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        prefix = self._prefix(trace_context.get() or {})
        event = getattr(record, "event", None)
        suffix = f" [{event}]" if event is not None else ""

        line = f"{color}[{record.levelname:<8}]{self.RESET} {prefix}{record.getMessage()}{suffix}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single root handler. Call once at worker startup.

    Args:
        level: Root log level name
        format: "json", "human", or "auto". Auto picks JSON when
            SECFLOW_LOG_FORMAT=json or ENV=production.
    """
    if format == "auto":
        wants_json = (
            os.getenv("SECFLOW_LOG_FORMAT", "").lower() == "json"
            or os.getenv("ENV", "development").lower() == "production"
        )
        format = "json" if wants_json else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        # Tools launched from here should not colour their output either
        os.environ["NO_COLOR"] = "1"
        os.environ["FORCE_COLOR"] = "0"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    if format == "json":
        # httpx/httpcore must not keep their own plain-text handlers
        for name in ("httpcore", "httpx"):
            third_party = logging.getLogger(name)
            third_party.handlers.clear()
            third_party.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """Merge ids into the current invocation context."""
    trace_context.set({**(trace_context.get() or {}), **kwargs})


def get_trace_context() -> dict:
    """Copy of the current invocation context; empty outside an invocation."""
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
