"""Tests for typed ports, schema validation and connection compatibility."""

from __future__ import annotations

import pytest

from secflow.errors import ValidationError
from secflow.ports import (
    Port,
    PortKind,
    PortType,
    Schema,
    can_connect,
    define_inputs,
    define_outputs,
    define_parameters,
)


class TestPortType:
    def test_string_forms(self):
        assert str(PortType.text()) == "text"
        assert str(PortType.list_of(PortType.text())) == "list<text>"
        assert str(PortType.map_of(PortType.number())) == "map<number>"
        assert str(PortType.contract("aws-credentials", credential=True)) == "contract<aws-credentials>"

    @pytest.mark.parametrize(
        "source,target,expected",
        [
            (PortType.text(), PortType.text(), True),
            (PortType.number(), PortType.text(), True),
            (PortType.boolean(), PortType.text(), True),
            (PortType.text(), PortType.number(), False),
            (PortType.text(), PortType.secret(), True),
            (PortType.number(), PortType.secret(), False),
            (PortType.any(), PortType.number(), True),
            (PortType.json(), PortType.any(), True),
            (PortType.list_of(PortType.text()), PortType.list_of(PortType.text()), True),
            (PortType.list_of(PortType.number()), PortType.list_of(PortType.text()), True),
            (PortType.list_of(PortType.text()), PortType.map_of(PortType.text()), False),
            (PortType.list_of(PortType.text()), PortType.text(), False),
            (PortType.contract("a"), PortType.contract("a"), True),
            (PortType.contract("a"), PortType.contract("b"), False),
            (PortType.contract("a", credential=True), PortType.contract("a"), False),
        ],
    )
    def test_can_connect(self, source, target, expected):
        assert can_connect(source, target) is expected


class TestPort:
    def test_required_derived_from_default(self):
        assert Port(PortType.text()).is_required is True
        assert Port(PortType.text(), default="x").is_required is False
        assert Port(PortType.text(), required=False).is_required is False

    def test_metadata(self):
        schema = define_inputs(
            {"targets": Port(PortType.list_of(PortType.text()), label="Targets", description="Hosts")}
        )
        meta = schema.describe()[0]
        assert meta == {
            "id": "targets",
            "label": "Targets",
            "type": "list<text>",
            "connectionType": "list<text>",
            "required": True,
            "description": "Hosts",
        }

    def test_tuple_spec_is_accepted(self):
        schema = define_parameters({"mode": (PortType.text(), {"default": "fast", "choices": ["fast", "slow"]})})
        port = schema.get("mode")
        assert port is not None
        assert port.choices == ("fast", "slow")
        assert schema.parse({}) == {"mode": "fast"}

    def test_bad_spec_rejected(self):
        with pytest.raises(TypeError):
            define_inputs({"x": "text"})


class TestSchemaParse:
    def setup_method(self):
        self.params = define_parameters(
            {
                "rateLimit": Port(PortType.number(), default=150, coerce=True, min=1, max=1000),
                "severity": Port(
                    PortType.list_of(PortType.text()),
                    default=[],
                    choices=("low", "high"),
                ),
                "verbose": Port(PortType.boolean(), default=False),
                "label": Port(PortType.text(), required=False),
            }
        )

    def test_defaults_applied(self):
        assert self.params.parse({}) == {
            "rateLimit": 150,
            "severity": [],
            "verbose": False,
            "label": None,
        }

    def test_default_lists_are_not_shared(self):
        first = self.params.parse({})
        first["severity"].append("low")
        assert self.params.parse({})["severity"] == []

    def test_coercible_number_accepts_numeric_string(self):
        assert self.params.parse({"rateLimit": "200"})["rateLimit"] == 200

    def test_strict_number_rejects_string(self):
        schema = define_inputs({"count": Port(PortType.number())})
        with pytest.raises(ValidationError) as exc_info:
            schema.parse({"count": "5"})
        assert "count" in exc_info.value.field_errors

    @pytest.mark.parametrize("value", ["nan", "inf", "-inf", float("nan"), float("inf")])
    def test_non_finite_numbers_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            self.params.parse({"rateLimit": value})
        assert exc_info.value.retryable is False
        assert any("finite" in m for m in exc_info.value.field_errors["rateLimit"])

    def test_non_finite_list_elements_rejected(self):
        schema = define_inputs({"weights": Port(PortType.list_of(PortType.number()))})
        with pytest.raises(ValidationError) as exc_info:
            schema.parse({"weights": [1.0, float("nan")]})
        assert "weights" in exc_info.value.field_errors

    def test_number_bounds(self):
        with pytest.raises(ValidationError) as exc_info:
            self.params.parse({"rateLimit": 0})
        assert "rateLimit" in exc_info.value.field_errors

    def test_choices_enforced_per_element(self):
        with pytest.raises(ValidationError) as exc_info:
            self.params.parse({"severity": ["low", "extreme"]})
        assert "severity" in exc_info.value.field_errors

    def test_strict_boolean_rejects_string(self):
        with pytest.raises(ValidationError):
            self.params.parse({"verbose": "yes"})

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            self.params.parse({"bogus": 1})
        assert exc_info.value.field_errors == {"bogus": ["Unknown field"]}

    def test_all_violations_reported_together(self):
        schema = define_inputs(
            {
                "targets": Port(PortType.list_of(PortType.text())),
                "indicator": Port(PortType.text()),
            }
        )
        with pytest.raises(ValidationError) as exc_info:
            schema.parse({"targets": "example.com"})

        field_errors = exc_info.value.field_errors
        assert set(field_errors) == {"targets", "indicator"}
        assert field_errors["indicator"] == ["Field is required"]

    def test_nested_error_paths(self):
        schema = define_inputs({"targets": Port(PortType.list_of(PortType.text()))})
        _, field_errors = schema.collect_errors({"targets": ["ok", 5]})
        assert field_errors["targets"][0].startswith("1: ")

    def test_non_object_candidate(self):
        value, field_errors = self.params.collect_errors(["not", "a", "dict"])
        assert value is None
        assert "__root__" in field_errors

    def test_none_candidate_means_empty(self):
        assert self.params.parse(None)["rateLimit"] == 150

    def test_map_port(self):
        schema = define_inputs({"files": Port(PortType.map_of(PortType.text()))})
        assert schema.parse({"files": {"a.txt": "x"}}) == {"files": {"a.txt": "x"}}
        with pytest.raises(ValidationError):
            schema.parse({"files": {"a.txt": 1}})


class TestSchemaShape:
    def test_outputs_ignore_extra_keys(self):
        outputs = define_outputs({"count": Port(PortType.number())})
        assert outputs.parse({"count": 1, "debug": "x"}) == {"count": 1}

    def test_container_protocol(self):
        schema = define_inputs({"a": PortType.text(), "b": PortType.number()})
        assert "a" in schema
        assert "c" not in schema
        assert len(schema) == 2
        assert schema.port_ids == ["a", "b"]
        assert schema.get("b").type.kind == PortKind.NUMBER

    def test_json_schema_uses_port_ids(self):
        schema = define_inputs({"targets": Port(PortType.list_of(PortType.text()), label="Targets")})
        exported = schema.json_schema()

        assert "targets" in exported["properties"]
        assert exported["required"] == ["targets"]
        assert exported["properties"]["targets"]["x-port"]["label"] == "Targets"

    def test_schema_role(self):
        assert isinstance(define_inputs({}), Schema)
        assert define_inputs({}).role == "inputs"
        assert define_outputs({}).extra == "ignore"
        assert define_parameters({}).extra == "forbid"
