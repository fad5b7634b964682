"""
Component definitions and invocation.

A component is a fixed capability record: schemas, runner template, retry
policy and an async ``execute`` function. ``invoke_component`` is the
boundary the workflow engine calls: it validates the request, runs
``execute`` with the invocation ids in the logging context, checks the
output, and makes sure nothing but a classified error escapes.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from secflow.context import ExecutionContext
from secflow.errors import ComponentError, ServiceError, ValidationError, wrap_error
from secflow.observability.logging import set_trace_context, trace_context
from secflow.ports import Schema, define_parameters
from secflow.retry import DEFAULT_RETRY_POLICY, RetryPolicy, retry_async
from secflow.runner import InlineRunnerConfig, RunnerConfig

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRequest:
    """Validated inputs and parameters for one invocation."""

    inputs: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)


ExecuteFn = Callable[[ExecutionRequest, ExecutionContext], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ComponentDefinition:
    """Immutable description of a registered component."""

    id: str
    label: str
    category: str
    inputs: Schema
    outputs: Schema
    execute: ExecuteFn
    parameters: Schema = field(default_factory=lambda: define_parameters({}))
    runner: RunnerConfig = field(default_factory=InlineRunnerConfig)
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY
    docs: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Component id must be non-empty")
        shared = set(self.inputs.port_ids) & set(self.parameters.port_ids)
        if shared:
            raise ValueError(
                f"Component '{self.id}' reuses port id(s) across inputs and parameters: "
                f"{sorted(shared)}"
            )

    def validate(
        self, inputs: dict[str, Any] | None, params: dict[str, Any] | None
    ) -> ExecutionRequest:
        """Validate a raw request, reporting input and parameter violations together."""
        parsed_inputs, input_errors = self.inputs.collect_errors(inputs or {})
        parsed_params, param_errors = self.parameters.collect_errors(params or {})
        if input_errors or param_errors:
            field_errors = {f"inputs.{k}": v for k, v in input_errors.items()}
            field_errors.update({f"params.{k}": v for k, v in param_errors.items()})
            raise ValidationError(
                f"Invalid request for {self.id}: {', '.join(sorted(field_errors))}",
                field_errors=field_errors,
            )
        return ExecutionRequest(inputs=parsed_inputs or {}, params=parsed_params or {})

    def describe(self) -> dict[str, Any]:
        """JSON-ready catalogue entry."""
        return {
            "id": self.id,
            "label": self.label,
            "category": self.category,
            "runner": self.runner.kind,
            "docs": self.docs,
            "inputs": self.inputs.describe(),
            "outputs": self.outputs.describe(),
            "parameters": self.parameters.describe(),
            "inputSchema": self.inputs.json_schema(),
            "parameterSchema": self.parameters.json_schema(),
            "outputSchema": self.outputs.json_schema(),
            "retryPolicy": self.retry_policy.to_dict(),
            "metadata": dict(self.metadata),
        }


async def invoke_component(
    definition: ComponentDefinition,
    context: ExecutionContext,
    inputs: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Validate a request and run the component.

    Returns:
        The component output, checked against its output schema with
        defaults applied.

    Raises:
        ComponentError: every failure, classified. Unclassified exceptions
            are wrapped with ``wrap_error``.
    """
    previous_context = trace_context.get()
    set_trace_context(
        run_id=context.run_id,
        component_id=definition.id,
        tenant_id=context.tenant_id,
    )
    started = time.monotonic()
    try:
        request = definition.validate(inputs, params)
        result = await definition.execute(request, context)
        if not isinstance(result, dict):
            raise ServiceError(
                f"Component {definition.id} returned {type(result).__name__}, expected an object"
            )
        parsed, field_errors = definition.outputs.collect_errors(result)
        if field_errors:
            raise ServiceError(
                f"Component {definition.id} produced output that does not match its schema",
                details={"field_errors": field_errors},
            )
        output = {**result, **(parsed or {})}
        logger.info(
            f"Component {definition.id} completed",
            extra={"event": "component_completed", "latency_ms": _elapsed_ms(started)},
        )
        return output
    except asyncio.CancelledError:
        logger.warning(f"Component {definition.id} cancelled")
        raise
    except ComponentError as e:
        _log_failure(definition, e, started)
        raise
    except Exception as e:
        error = wrap_error(e, context=definition.label)
        _log_failure(definition, error, started)
        raise error from e
    finally:
        trace_context.set(previous_context)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _log_failure(definition: ComponentDefinition, error: ComponentError, started: float) -> None:
    logger.error(
        f"Component {definition.id} failed with {error.kind}: {error.message}",
        extra={"event": "component_failed", "latency_ms": _elapsed_ms(started)},
    )


async def run_with_retry(
    definition: ComponentDefinition,
    context_factory: Callable[[int], ExecutionContext],
    inputs: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> dict[str, Any]:
    """Invoke with the component's own retry policy.

    ``context_factory(attempt)`` supplies a fresh context per attempt; each
    attempt gets its own run-scoped resources.
    """

    async def attempt(number: int) -> dict[str, Any]:
        context = context_factory(number)
        try:
            return await invoke_component(definition, context, inputs, params)
        finally:
            await context.aclose()

    return await retry_async(attempt, definition.retry_policy, sleep=sleep)
