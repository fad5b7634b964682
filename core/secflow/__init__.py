"""
SecFlow - execution runtime for security-tooling components.

Components wrap third-party scanners behind a typed contract. The runtime
validates their inputs, runs them inline or in an isolated container with a
per-run scratch volume, classifies failures for retry, and normalizes their
output.
"""

from secflow.component import (
    ComponentDefinition,
    ExecutionRequest,
    invoke_component,
    run_with_retry,
)
from secflow.context import (
    ExecutionContext,
    ProgressEmitter,
    ProgressEvent,
    create_execution_context,
)
from secflow.errors import (
    AuthenticationError,
    ComponentError,
    ComponentTimeoutError,
    ConfigurationError,
    ErrorKind,
    NetworkError,
    ServiceError,
    ValidationError,
    classify_http_status,
    wrap_error,
)
from secflow.normalize import normalize_output, parse_ndjson
from secflow.ports import (
    Port,
    PortType,
    Schema,
    can_connect,
    define_inputs,
    define_outputs,
    define_parameters,
)
from secflow.registry import ComponentRegistry, DuplicateComponentError, component_registry
from secflow.retry import DEFAULT_RETRY_POLICY, RetryPolicy
from secflow.runner import (
    ContainerResult,
    ContainerRunnerConfig,
    InlineRunnerConfig,
    run_component,
)
from secflow.volumes import MountDescriptor, VolumeHandle, VolumeManager

__version__ = "0.1.0"

__all__ = [
    # Components
    "ComponentDefinition",
    "ExecutionRequest",
    "invoke_component",
    "run_with_retry",
    "ComponentRegistry",
    "DuplicateComponentError",
    "component_registry",
    # Context
    "ExecutionContext",
    "ProgressEmitter",
    "ProgressEvent",
    "create_execution_context",
    # Errors
    "ComponentError",
    "ErrorKind",
    "ValidationError",
    "ConfigurationError",
    "AuthenticationError",
    "ServiceError",
    "NetworkError",
    "ComponentTimeoutError",
    "classify_http_status",
    "wrap_error",
    # Ports
    "Port",
    "PortType",
    "Schema",
    "can_connect",
    "define_inputs",
    "define_outputs",
    "define_parameters",
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    # Runners
    "InlineRunnerConfig",
    "ContainerRunnerConfig",
    "ContainerResult",
    "run_component",
    # Volumes
    "VolumeManager",
    "VolumeHandle",
    "MountDescriptor",
    # Output
    "normalize_output",
    "parse_ndjson",
]
