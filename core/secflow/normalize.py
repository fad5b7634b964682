"""
Output normalization helpers shared by component execute functions.

Scanner output arrives as NDJSON, plain text or nothing at all. These helpers
turn it into records without ever raising on malformed tool output:
bad lines are skipped, unstructured output falls back to a per-component
text heuristic, and diagnostics end up in an ``errors`` list.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

TextFallback = Callable[[list[str]], list[dict[str, Any]]]


def split_lines(raw: str | bytes | None) -> list[str]:
    """Split raw output into stripped, non-empty lines."""
    if raw is None:
        return []
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return [line.strip() for line in raw.splitlines() if line.strip()]


def dedupe_preserving_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


@dataclass
class NdjsonResult:
    """Records parsed from NDJSON plus the lines that could not be parsed."""

    records: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)


def parse_ndjson(raw: str | bytes | None) -> NdjsonResult:
    """Parse one JSON object per line, skipping lines that are not objects."""
    result = NdjsonResult()
    for line in split_lines(raw):
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            result.skipped.append(line)
            continue
        if isinstance(value, dict):
            result.records.append(value)
        else:
            result.skipped.append(line)
    if result.skipped:
        logger.debug(f"Skipped {len(result.skipped)} non-JSON output line(s)")
    return result


@dataclass
class NormalizedOutput:
    """Records, diagnostics and the raw text they came from."""

    records: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    raw_output: str = ""
    structured: bool = True

    @property
    def count(self) -> int:
        return len(self.records)


def normalize_output(
    raw: str | bytes | None,
    fallback: TextFallback | None = None,
    *,
    tool: str = "tool",
) -> NormalizedOutput:
    """
    Normalize raw tool output into records.

    - Empty output: zero records, no errors.
    - Some lines parse as JSON objects: those records, plus a diagnostic
      counting the lines that did not.
    - No line parses: ``fallback(lines)`` builds records and a diagnostic is
      recorded in ``errors``. Without a fallback the diagnostic is all that
      remains.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw_text = raw or ""
    lines = split_lines(raw_text)
    if not lines:
        return NormalizedOutput(raw_output=raw_text)

    parsed = parse_ndjson(raw_text)
    if parsed.records:
        errors = []
        if parsed.skipped:
            errors.append(f"Skipped {len(parsed.skipped)} non-JSON line(s) in {tool} output")
        return NormalizedOutput(records=parsed.records, errors=errors, raw_output=raw_text)

    records: list[dict[str, Any]] = []
    errors = [f"{tool} output was not JSON; parsed {len(lines)} line(s) as plain text"]
    if fallback is not None:
        try:
            records = fallback(lines)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            errors.append(f"{tool} plain-text fallback failed: {e}")
            records = []
    return NormalizedOutput(records=records, errors=errors, raw_output=raw_text, structured=False)
