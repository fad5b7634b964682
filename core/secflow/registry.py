"""Process-wide component catalogue.

Populated once at startup with explicit ``register`` calls and read-only
afterwards, so lookups need no locking.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator

from secflow.component import ComponentDefinition

logger = logging.getLogger(__name__)


class DuplicateComponentError(RuntimeError):
    """Two definitions share an id. This is a packaging defect, not a runtime condition."""


class ComponentRegistry:
    """Maps stable component ids to their definitions."""

    def __init__(self):
        self._components: dict[str, ComponentDefinition] = {}
        self._register_lock = threading.Lock()

    def register(self, definition: ComponentDefinition) -> ComponentDefinition:
        """
        Register a component definition.

        Raises:
            DuplicateComponentError: If the id is already registered
        """
        with self._register_lock:
            if definition.id in self._components:
                raise DuplicateComponentError(
                    f"Component '{definition.id}' is already registered"
                )
            self._components[definition.id] = definition
        logger.debug(f"Registered component {definition.id} ({definition.runner.kind})")
        return definition

    def get(self, component_id: str) -> ComponentDefinition | None:
        return self._components.get(component_id)

    def require(self, component_id: str) -> ComponentDefinition:
        """Like ``get`` but raises KeyError listing what is available."""
        definition = self._components.get(component_id)
        if definition is None:
            raise KeyError(
                f"Unknown component '{component_id}'. Available: {sorted(self._components)}"
            )
        return definition

    def has(self, component_id: str) -> bool:
        return component_id in self._components

    def list(self, category: str | None = None) -> list[ComponentDefinition]:
        return [
            d for d in self._components.values() if category is None or d.category == category
        ]

    def ids(self) -> list[str]:
        return sorted(self._components)

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._components

    def __len__(self) -> int:
        return len(self._components)

    def __iter__(self) -> Iterator[ComponentDefinition]:
        return iter(list(self._components.values()))


# Default registry used by the bundled components
component_registry = ComponentRegistry()
