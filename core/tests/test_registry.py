"""Tests for ComponentRegistry."""

from __future__ import annotations

import subprocess
import sys

import pytest

from secflow.component import ComponentDefinition
from secflow.ports import Port, PortType, define_inputs, define_outputs
from secflow.registry import ComponentRegistry, DuplicateComponentError


async def _noop(request, context):
    return {}


def _definition(component_id: str, category: str = "security") -> ComponentDefinition:
    return ComponentDefinition(
        id=component_id,
        label=component_id.title(),
        category=category,
        inputs=define_inputs({"value": Port(PortType.text())}),
        outputs=define_outputs({}),
        execute=_noop,
    )


class TestComponentRegistry:
    def setup_method(self):
        self.registry = ComponentRegistry()

    def test_register_and_get(self):
        definition = _definition("test.echo")
        assert self.registry.register(definition) is definition
        assert self.registry.get("test.echo") is definition
        assert self.registry.has("test.echo")
        assert "test.echo" in self.registry
        assert len(self.registry) == 1

    def test_duplicate_id_is_a_startup_defect(self):
        self.registry.register(_definition("test.echo"))
        with pytest.raises(DuplicateComponentError, match="already registered"):
            self.registry.register(_definition("test.echo"))
        assert len(self.registry) == 1

    def test_get_unknown_returns_none(self):
        assert self.registry.get("missing") is None
        assert not self.registry.has("missing")

    def test_require_unknown_lists_available(self):
        self.registry.register(_definition("test.echo"))
        with pytest.raises(KeyError, match="test.echo"):
            self.registry.require("missing")

    def test_list_filters_by_category(self):
        self.registry.register(_definition("a", category="security"))
        self.registry.register(_definition("b", category="notify"))

        assert [d.id for d in self.registry.list()] == ["a", "b"]
        assert [d.id for d in self.registry.list("notify")] == ["b"]
        assert self.registry.ids() == ["a", "b"]
        assert [d.id for d in self.registry] == ["a", "b"]

    def test_list_method_does_not_break_annotations(self):
        # ``list`` is shadowed inside the class body; later annotations stay unevaluated
        assert ComponentRegistry.ids.__annotations__["return"] == "list[str]"


def test_package_imports_in_a_fresh_interpreter():
    result = subprocess.run(
        [sys.executable, "-c", "import secflow, secflow.registry"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, result.stderr
