"""
Security components built on the secflow runtime.

Usage:
    from secflow import component_registry
    from secflow_tools.components import register_all_components

    register_all_components(component_registry)
"""

from secflow.component import ComponentDefinition
from secflow.registry import ComponentRegistry, component_registry

from .abuseipdb_tool import definition as abuseipdb_definition
from .dnsx_tool import definition as dnsx_definition
from .nuclei_tool import definition as nuclei_definition
from .subfinder_tool import definition as subfinder_definition
from .trufflehog_tool import definition as trufflehog_definition
from .virustotal_tool import definition as virustotal_definition

ALL_COMPONENTS: tuple[ComponentDefinition, ...] = (
    nuclei_definition,
    dnsx_definition,
    subfinder_definition,
    trufflehog_definition,
    virustotal_definition,
    abuseipdb_definition,
)


def register_all_components(registry: ComponentRegistry | None = None) -> list[str]:
    """
    Register every bundled component.

    Returns:
        The registered component ids, in registration order.
    """
    target = registry if registry is not None else component_registry
    for definition in ALL_COMPONENTS:
        target.register(definition)
    return [definition.id for definition in ALL_COMPONENTS]


__all__ = ["ALL_COMPONENTS", "register_all_components"]
