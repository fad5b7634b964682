"""
Retry policy model.

A policy is static per component. The decision rule is:

    retry iff attempt < max_attempts and error kind not in non_retryable_error_types

and the backoff for attempt ``n`` (1-indexed) is
``min(maximum_interval, initial_interval * backoff_coefficient ** (n - 1))``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from secflow.errors import NON_RETRYABLE_KINDS, ErrorKind, wrap_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _normalize_kinds(kinds: Iterable[str | ErrorKind]) -> frozenset[ErrorKind]:
    normalized: set[ErrorKind] = set()
    for kind in kinds:
        try:
            normalized.add(ErrorKind(kind))
        except ValueError as exc:
            raise ValueError(
                f"Unknown error kind '{kind}'. Expected one of: {[k.value for k in ErrorKind]}"
            ) from exc
    return frozenset(normalized)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration plus the error kinds that are never retried."""

    max_attempts: int = 3
    initial_interval: float = 1.0
    maximum_interval: float = 60.0
    backoff_coefficient: float = 2.0
    non_retryable_error_types: frozenset[ErrorKind] = field(
        default_factory=lambda: NON_RETRYABLE_KINDS
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_interval < 0 or self.maximum_interval < 0:
            raise ValueError("intervals must be non-negative")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")
        # Accept plain strings ("ValidationError") as well as ErrorKind members
        object.__setattr__(
            self, "non_retryable_error_types", _normalize_kinds(self.non_retryable_error_types)
        )

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Decide whether a failed ``attempt`` (1-indexed) should be retried."""
        if attempt >= self.max_attempts:
            return False
        return wrap_error(error).kind not in self.non_retryable_error_types

    def backoff_interval(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (1-indexed)."""
        if attempt < 1:
            raise ValueError("attempt is 1-indexed")
        interval = self.initial_interval * self.backoff_coefficient ** (attempt - 1)
        return min(self.maximum_interval, interval)

    def next_delay(self, error: BaseException, attempt: int) -> float:
        """Backoff for ``attempt``, unless the error carries its own delay (Retry-After)."""
        retry_delay = getattr(error, "retry_delay", None)
        if retry_delay is not None:
            return min(self.maximum_interval, max(0.0, float(retry_delay)))
        return self.backoff_interval(attempt)

    def to_dict(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "initial_interval": self.initial_interval,
            "maximum_interval": self.maximum_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "non_retryable_error_types": sorted(k.value for k in self.non_retryable_error_types),
        }


DEFAULT_RETRY_POLICY = RetryPolicy()

NO_RETRY_POLICY = RetryPolicy(max_attempts=1)


async def retry_async(
    fn: Callable[[int], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Call ``fn(attempt)`` until it succeeds or the policy gives up.

    Failures are classified with ``wrap_error`` and the last classified error
    is raised. Used by callers that run components without an external
    scheduler.
    """
    attempt = 1
    while True:
        try:
            return await fn(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = wrap_error(exc)
            if not policy.should_retry(error, attempt):
                if error is exc:
                    raise
                raise error from exc
            delay = policy.next_delay(error, attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed with {error.kind}: "
                f"{error.message}; retrying in {delay:.1f}s",
                extra={"event": "retry", "attempt": attempt},
            )
            await sleep(delay)
            attempt += 1
