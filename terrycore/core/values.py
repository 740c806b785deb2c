"""
Attribute values for resource configuration and state.

Attributes are dynamic and loosely typed, so every value is wrapped in a
tagged variant instead of being passed around as raw Python objects.
References to other resources and values that are only known after apply
are variants too, which lets the differ and executor handle them explicitly.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple, Union


class ValueKind(Enum):
    """Variant tag of a Value."""
    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    REFERENCE = "reference"
    TEMPLATE = "template"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ResourceRef:
    """
    Reference to another resource, optionally to one of its attributes.

    Attributes:
        address: Resource address, e.g. "aws_vpc.main" or "data.aws_ami.base"
        attribute: Dotted attribute path, e.g. "id" or "tags.Name"
    """
    address: str
    attribute: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "ResourceRef":
        """
        Parse "type.name[.attr...]" or "data.type.name[.attr...]".

        Raises:
            ValueError: If the text does not contain a type and a name
        """
        parts = text.strip().split(".")
        head = 3 if parts[0] == "data" else 2
        if len(parts) < head or not all(parts[:head]):
            raise ValueError(f"Not a resource reference: {text!r}")
        address = ".".join(parts[:head])
        attribute = ".".join(parts[head:]) or None
        return cls(address=address, attribute=attribute)

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.address}.{self.attribute}"
        return self.address


TemplatePart = Union[str, ResourceRef]


@dataclass(frozen=True)
class Value:
    """
    A tagged attribute value.

    Payload by kind:
        NULL/UNKNOWN: None
        STRING: str, NUMBER: int or float, BOOL: bool
        SEQUENCE: tuple of Value
        MAPPING: tuple of (key, Value) pairs sorted by key
        REFERENCE: ResourceRef
        TEMPLATE: tuple of str and ResourceRef parts
    """
    kind: ValueKind
    payload: Any = None

    @classmethod
    def of(cls, obj: Any) -> "Value":
        """
        Wrap a plain Python object, recursively.

        Raises:
            TypeError: For objects with no attribute representation
        """
        if isinstance(obj, Value):
            return obj
        if obj is None:
            return NULL
        if isinstance(obj, bool):
            return cls(ValueKind.BOOL, obj)
        if isinstance(obj, (int, float)):
            return cls(ValueKind.NUMBER, obj)
        if isinstance(obj, str):
            return cls(ValueKind.STRING, obj)
        if isinstance(obj, (list, tuple)):
            return cls(ValueKind.SEQUENCE, tuple(cls.of(item) for item in obj))
        if isinstance(obj, dict):
            items = sorted(
                ((str(k), cls.of(v)) for k, v in obj.items()),
                key=lambda item: item[0],
            )
            return cls(ValueKind.MAPPING, tuple(items))
        if isinstance(obj, ResourceRef):
            return cls(ValueKind.REFERENCE, obj)
        raise TypeError(f"Unsupported attribute value type: {type(obj).__name__}")

    @classmethod
    def reference(cls, text: str) -> "Value":
        """Build a reference value from "type.name[.attr]"."""
        return cls(ValueKind.REFERENCE, ResourceRef.parse(text))

    @classmethod
    def template(cls, *parts: TemplatePart) -> "Value":
        """Build a string template from literal and reference parts."""
        return cls(ValueKind.TEMPLATE, tuple(parts))

    def to_python(self) -> Any:
        """
        Convert back to plain Python.

        Raises:
            ValueError: If the value still contains references or unknowns
        """
        kind = self.kind
        if kind in (ValueKind.NULL, ValueKind.STRING, ValueKind.NUMBER, ValueKind.BOOL):
            return self.payload
        if kind == ValueKind.SEQUENCE:
            return [item.to_python() for item in self.payload]
        if kind == ValueKind.MAPPING:
            return {key: item.to_python() for key, item in self.payload}
        raise ValueError(f"Cannot convert {kind.value} value to a concrete value")

    def items(self) -> Tuple[Tuple[str, "Value"], ...]:
        if self.kind != ValueKind.MAPPING:
            raise TypeError(f"{self.kind.value} value has no items")
        return self.payload

    def references(self) -> Iterator[ResourceRef]:
        """Yield every resource reference nested in this value."""
        if self.kind == ValueKind.REFERENCE:
            yield self.payload
        elif self.kind == ValueKind.TEMPLATE:
            for part in self.payload:
                if isinstance(part, ResourceRef):
                    yield part
        elif self.kind == ValueKind.SEQUENCE:
            for item in self.payload:
                yield from item.references()
        elif self.kind == ValueKind.MAPPING:
            for _, item in self.payload:
                yield from item.references()

    def is_known(self) -> bool:
        """True when the value is fully concrete."""
        if self.kind in (ValueKind.UNKNOWN, ValueKind.REFERENCE, ValueKind.TEMPLATE):
            return False
        if self.kind == ValueKind.SEQUENCE:
            return all(item.is_known() for item in self.payload)
        if self.kind == ValueKind.MAPPING:
            return all(item.is_known() for _, item in self.payload)
        return True

    def __repr__(self) -> str:
        if self.kind in (ValueKind.NULL, ValueKind.UNKNOWN):
            return f"Value({self.kind.value})"
        return f"Value({self.kind.value}, {self.payload!r})"


NULL = Value(ValueKind.NULL)
UNKNOWN = Value(ValueKind.UNKNOWN)

Attributes = Dict[str, Value]

# Returns the plain attributes of a resource address, or None if unavailable.
AttributeLookup = Callable[[str], Optional[Mapping[str, Any]]]


def to_attributes(obj: Optional[Mapping[str, Any]]) -> Attributes:
    """Wrap a plain mapping as an attribute mapping."""
    if not obj:
        return {}
    return {str(key): Value.of(value) for key, value in obj.items()}


def to_plain(attributes: Attributes) -> Dict[str, Any]:
    """Unwrap a fully known attribute mapping."""
    return {key: value.to_python() for key, value in attributes.items()}


def resolve(value: Value, lookup: AttributeLookup) -> Value:
    """
    Substitute references using attributes from the lookup.

    References whose target or attribute is unavailable resolve to UNKNOWN.
    """
    kind = value.kind
    if kind == ValueKind.REFERENCE:
        return _resolve_ref(value.payload, lookup)
    if kind == ValueKind.TEMPLATE:
        rendered = []
        for part in value.payload:
            if isinstance(part, ResourceRef):
                resolved = _resolve_ref(part, lookup)
                if not resolved.is_known():
                    return UNKNOWN
                rendered.append(_interpolate(resolved))
            else:
                rendered.append(part)
        return Value(ValueKind.STRING, "".join(rendered))
    if kind == ValueKind.SEQUENCE:
        return Value(kind, tuple(resolve(item, lookup) for item in value.payload))
    if kind == ValueKind.MAPPING:
        return Value(kind, tuple((key, resolve(item, lookup)) for key, item in value.payload))
    return value


def resolve_attributes(attributes: Attributes, lookup: AttributeLookup) -> Attributes:
    return {key: resolve(value, lookup) for key, value in attributes.items()}


def _resolve_ref(ref: ResourceRef, lookup: AttributeLookup) -> Value:
    attrs = lookup(ref.address)
    if attrs is None:
        return UNKNOWN
    current: Any = attrs
    if ref.attribute:
        for step in ref.attribute.split("."):
            if isinstance(current, Mapping) and step in current:
                current = current[step]
            elif isinstance(current, list) and step.isdigit() and int(step) < len(current):
                current = current[int(step)]
            else:
                return UNKNOWN
    return Value.of(current)


def _interpolate(value: Value) -> str:
    if value.kind == ValueKind.BOOL:
        return "true" if value.payload else "false"
    if value.kind == ValueKind.NULL:
        return ""
    if value.kind in (ValueKind.SEQUENCE, ValueKind.MAPPING):
        return json.dumps(value.to_python(), sort_keys=True)
    return str(value.payload)


def to_json(value: Value) -> Any:
    """
    JSON form of any value, including unresolved ones.

    References and templates become {"$ref": ...} / {"$template": [...]},
    unknowns become {"$unknown": true}.
    """
    kind = value.kind
    if kind == ValueKind.UNKNOWN:
        return {"$unknown": True}
    if kind == ValueKind.REFERENCE:
        return {"$ref": str(value.payload)}
    if kind == ValueKind.TEMPLATE:
        return {"$template": [
            {"$ref": str(part)} if isinstance(part, ResourceRef) else part
            for part in value.payload
        ]}
    if kind == ValueKind.SEQUENCE:
        return [to_json(item) for item in value.payload]
    if kind == ValueKind.MAPPING:
        return {key: to_json(item) for key, item in value.payload}
    return value.payload
