"""
Typed ports and schemas for component inputs, outputs and parameters.

A component declares its surface as a mapping of port id -> ``Port``. The
mapping is compiled once into a pydantic model; ``Schema.parse`` validates a
candidate record against it, applies defaults, and reports every violation in
a single ``ValidationError``.

Example:
    inputs = define_inputs({
        "targets": Port(PortType.list_of(PortType.text()), label="Targets"),
    })
    params = define_parameters({
        "rateLimit": Port(PortType.number(), default=150, coerce=True),
    })
    params.parse({})  # -> {"rateLimit": 150}
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    create_model,
)
from pydantic import ValidationError as PydanticValidationError

from secflow.errors import ValidationError


class PortKind(StrEnum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    SECRET = "secret"
    ANY = "any"
    LIST = "list"
    MAP = "map"
    CONTRACT = "contract"


PRIMITIVE_KINDS = frozenset(
    {PortKind.TEXT, PortKind.NUMBER, PortKind.BOOLEAN, PortKind.JSON, PortKind.SECRET}
)


@dataclass(frozen=True)
class PortType:
    """Semantic value type of a port, used for validation and graph compatibility."""

    kind: PortKind
    element: PortType | None = None
    name: str | None = None  # contract name
    credential: bool = False

    @classmethod
    def text(cls) -> PortType:
        return cls(PortKind.TEXT)

    @classmethod
    def number(cls) -> PortType:
        return cls(PortKind.NUMBER)

    @classmethod
    def boolean(cls) -> PortType:
        return cls(PortKind.BOOLEAN)

    @classmethod
    def json(cls) -> PortType:
        return cls(PortKind.JSON)

    @classmethod
    def secret(cls) -> PortType:
        return cls(PortKind.SECRET)

    @classmethod
    def any(cls) -> PortType:
        return cls(PortKind.ANY)

    @classmethod
    def list_of(cls, element: PortType) -> PortType:
        return cls(PortKind.LIST, element=element)

    @classmethod
    def map_of(cls, element: PortType) -> PortType:
        return cls(PortKind.MAP, element=element)

    @classmethod
    def contract(cls, name: str, credential: bool = False) -> PortType:
        return cls(PortKind.CONTRACT, name=name, credential=credential)

    def __str__(self) -> str:
        if self.kind in (PortKind.LIST, PortKind.MAP):
            return f"{self.kind}<{self.element}>"
        if self.kind == PortKind.CONTRACT:
            return f"contract<{self.name}>"
        return self.kind.value

    def python_type(self, coerce: bool = False) -> Any:
        """Annotation used for validation. Strict unless ``coerce`` is set."""
        match self.kind:
            case PortKind.TEXT | PortKind.SECRET:
                return StrictStr
            case PortKind.NUMBER:
                # Lax int | float accepts "150" and "1.5" from form fields
                number = int | float if coerce else StrictInt | StrictFloat
                return Annotated[number, AfterValidator(_require_finite)]
            case PortKind.BOOLEAN:
                return bool if coerce else StrictBool
            case PortKind.JSON | PortKind.ANY:
                return Any
            case PortKind.LIST:
                assert self.element is not None
                return list[self.element.python_type(coerce)]
            case PortKind.MAP:
                assert self.element is not None
                return dict[str, self.element.python_type(coerce)]
            case PortKind.CONTRACT:
                return dict[str, Any]
        raise ValueError(f"Unhandled port kind: {self.kind}")


def can_connect(source: PortType, target: PortType) -> bool:
    """Whether an output of type ``source`` may feed an input of type ``target``."""
    if source.kind == PortKind.ANY or target.kind == PortKind.ANY:
        return True

    if target.kind == PortKind.SECRET:
        return source.kind in (PortKind.SECRET, PortKind.TEXT)

    if source.kind in PRIMITIVE_KINDS and target.kind in PRIMITIVE_KINDS:
        if source.kind == target.kind:
            return True
        # Numbers and booleans render to text
        return target.kind == PortKind.TEXT and source.kind in (PortKind.NUMBER, PortKind.BOOLEAN)

    if source.kind == PortKind.CONTRACT and target.kind == PortKind.CONTRACT:
        return source.name == target.name and source.credential == target.credential

    if source.kind == target.kind and source.kind in (PortKind.LIST, PortKind.MAP):
        assert source.element is not None and target.element is not None
        return can_connect(source.element, target.element)

    return False


_MISSING: Any = object()


@dataclass(frozen=True)
class Port:
    """A named, typed value slot. ``id`` is filled in from the schema mapping."""

    type: PortType
    label: str = ""
    description: str = ""
    required: bool | None = None
    default: Any = _MISSING
    coerce: bool = False
    connection_type: str | None = None
    choices: tuple[Any, ...] | None = None
    min: float | None = None
    max: float | None = None
    id: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING

    @property
    def is_required(self) -> bool:
        if self.required is not None:
            return self.required
        return not self.has_default

    @property
    def effective_connection_type(self) -> str:
        return self.connection_type or str(self.type)

    def metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "id": self.id,
            "label": self.label or self.id,
            "type": str(self.type),
            "connectionType": self.effective_connection_type,
            "required": self.is_required,
        }
        if self.description:
            meta["description"] = self.description
        if self.choices is not None:
            meta["choices"] = list(self.choices)
        if self.min is not None:
            meta["min"] = self.min
        if self.max is not None:
            meta["max"] = self.max
        return meta


PortSpec = Port | PortType | tuple[PortType, dict[str, Any]]


def _to_port(port_id: str, spec: PortSpec) -> Port:
    if isinstance(spec, Port):
        port = spec
    elif isinstance(spec, PortType):
        port = Port(type=spec)
    elif isinstance(spec, tuple) and len(spec) == 2 and isinstance(spec[0], PortType):
        value_type, meta = spec
        if "choices" in meta and meta["choices"] is not None:
            meta = {**meta, "choices": tuple(meta["choices"])}
        port = Port(type=value_type, **meta)
    else:
        raise TypeError(f"Port '{port_id}' must be a Port, PortType or (PortType, metadata) pair")

    if not port_id or not isinstance(port_id, str):
        raise ValueError("Port ids must be non-empty strings")
    return replace(port, id=port_id)


def _require_finite(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError("must be a finite number")
    return value


def _choice_checker(choices: tuple[Any, ...]):
    allowed = set(choices)

    def check(value: Any) -> Any:
        values = value if isinstance(value, list) else [value]
        for item in values:
            if item is not None and item not in allowed:
                raise ValueError(f"{item!r} is not one of {sorted(map(str, allowed))}")
        return value

    return check


def _bounds_checker(minimum: float | None, maximum: float | None):
    def check(value: Any) -> Any:
        if minimum is not None and value < minimum:
            raise ValueError(f"must be >= {minimum}")
        if maximum is not None and value > maximum:
            raise ValueError(f"must be <= {maximum}")
        return value

    return check


def _field_for(port: Port) -> tuple[Any, Any]:
    annotation: Any = port.type.python_type(port.coerce)
    if port.choices is not None:
        annotation = Annotated[annotation, AfterValidator(_choice_checker(port.choices))]

    if port.type.kind == PortKind.NUMBER and (port.min is not None or port.max is not None):
        annotation = Annotated[annotation, AfterValidator(_bounds_checker(port.min, port.max))]

    extra = {"x-port": port.metadata()}
    if port.is_required:
        return annotation, Field(alias=port.id, json_schema_extra=extra)

    if port.has_default:
        default = port.default
        return annotation, Field(
            default_factory=lambda: copy.deepcopy(default),
            alias=port.id,
            json_schema_extra=extra,
        )

    return annotation | None, Field(default=None, alias=port.id, json_schema_extra=extra)


class Schema:
    """Compiled, immutable set of ports with a ``parse`` validator."""

    def __init__(
        self,
        role: Literal["inputs", "outputs", "parameters"],
        ports: dict[str, PortSpec],
        *,
        extra: Literal["forbid", "allow", "ignore"] = "forbid",
    ):
        self.role = role
        self.extra = extra
        self._ports: dict[str, Port] = {}
        for port_id, spec in ports.items():
            if port_id in self._ports:
                raise ValueError(f"Duplicate port id '{port_id}' in {role}")
            self._ports[port_id] = _to_port(port_id, spec)

        fields = {f"p{i}": _field_for(p) for i, p in enumerate(self._ports.values())}
        self._model: type[BaseModel] = create_model(
            f"{role.capitalize()}Schema",
            __config__=ConfigDict(extra=extra, populate_by_name=False),
            **fields,
        )

    @property
    def ports(self) -> dict[str, Port]:
        return dict(self._ports)

    @property
    def port_ids(self) -> list[str]:
        return list(self._ports)

    def get(self, port_id: str) -> Port | None:
        return self._ports.get(port_id)

    def collect_errors(self, candidate: Any) -> tuple[dict[str, Any] | None, dict[str, list[str]]]:
        """Validate without raising: ``(value, {})`` or ``(None, field_errors)``."""
        if candidate is None:
            candidate = {}
        if not isinstance(candidate, dict):
            return None, {"__root__": [f"Expected an object, got {type(candidate).__name__}"]}

        try:
            model = self._model.model_validate(candidate)
        except PydanticValidationError as e:
            field_errors: dict[str, list[str]] = {}
            for error in e.errors():
                loc = error["loc"]
                key = str(loc[0]) if loc else "__root__"
                path = ".".join(str(part) for part in loc[1:])
                message = error["msg"]
                if error["type"] == "missing":
                    message = "Field is required"
                elif error["type"] == "extra_forbidden":
                    message = "Unknown field"
                field_errors.setdefault(key, []).append(f"{path}: {message}" if path else message)
            return None, field_errors

        return model.model_dump(by_alias=True), {}

    def parse(self, candidate: Any) -> dict[str, Any]:
        """Validate ``candidate`` and return it with defaults applied.

        Raises:
            ValidationError: listing every violated field in ``field_errors``
        """
        value, field_errors = self.collect_errors(candidate)
        if field_errors:
            count = sum(len(v) for v in field_errors.values())
            raise ValidationError(
                f"Invalid {self.role}: {count} violation(s) in {', '.join(sorted(field_errors))}",
                field_errors=field_errors,
            )
        assert value is not None
        return value

    def json_schema(self) -> dict[str, Any]:
        """JSON Schema export with per-port ``x-port`` metadata."""
        return self._model.model_json_schema(by_alias=True)

    def describe(self) -> list[dict[str, Any]]:
        return [port.metadata() for port in self._ports.values()]

    def __contains__(self, port_id: object) -> bool:
        return port_id in self._ports

    def __len__(self) -> int:
        return len(self._ports)

    def __repr__(self) -> str:
        return f"Schema({self.role}, ports={self.port_ids})"


def define_inputs(ports: dict[str, PortSpec], **kwargs: Any) -> Schema:
    return Schema("inputs", ports, **kwargs)


def define_outputs(ports: dict[str, PortSpec], **kwargs: Any) -> Schema:
    # Outputs tolerate extra keys so normalizers can attach diagnostics
    kwargs.setdefault("extra", "ignore")
    return Schema("outputs", ports, **kwargs)


def define_parameters(ports: dict[str, PortSpec], **kwargs: Any) -> Schema:
    return Schema("parameters", ports, **kwargs)
