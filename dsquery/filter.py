"""Property and composite filters for entity queries."""

from __future__ import annotations

from typing import Any, Dict, Tuple

from typing_extensions import Literal

from .entity import Key, ValueInput, encode_value
from .errors import InvalidArgError

Operator = Literal["=", "<", ">", "<=", ">=", "!=", "HAS_ANCESTOR", "IN", "NOT_IN"]
Combinator = Literal["AND", "OR", "NOT"]

OP_TO_OPERATOR: Dict[str, str] = {
    "=": "EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    "!=": "NOT_EQUAL",
    "HAS_ANCESTOR": "HAS_ANCESTOR",
    "IN": "IN",
    "NOT_IN": "NOT_IN",
}

KEY_PROPERTY = "__key__"


def normalize_operator(op: Any) -> str:
    if not isinstance(op, str):
        raise TypeError("filter operator must be a string")
    trimmed = op.strip()
    if trimmed not in OP_TO_OPERATOR:
        raise InvalidArgError(f"unsupported filter operator '{trimmed}'")
    return trimmed


def normalize_property(name: Any) -> str:
    if not isinstance(name, str):
        raise TypeError("property name must be a string")
    trimmed = name.strip()
    if not trimmed:
        raise InvalidArgError("property name must be a non-empty string")
    return trimmed


def property_filter_proto(name: str, op: str, value: ValueInput) -> Dict[str, Any]:
    if op == "HAS_ANCESTOR" and not isinstance(value, Key):
        raise InvalidArgError("HAS_ANCESTOR filters require a Key value")
    return {
        "propertyFilter": {
            "property": {"name": name},
            "op": OP_TO_OPERATOR[op],
            "value": encode_value(value),
        }
    }


class EntityFilter:
    """Base class shared by property and composite filters."""

    __slots__ = ()

    def to_proto(self) -> Dict[str, Any]:
        raise NotImplementedError


class PropertyFilter(EntityFilter):
    """Comparison of a single property against a value."""

    __slots__ = ("name", "op", "val")

    def __init__(self, name: str, op: Operator, val: ValueInput):
        normalized_name = normalize_property(name)
        normalized_op = normalize_operator(op)
        property_filter_proto(normalized_name, normalized_op, val)
        object.__setattr__(self, "name", normalized_name)
        object.__setattr__(self, "op", normalized_op)
        object.__setattr__(self, "val", val)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("filters are immutable")

    def to_proto(self) -> Dict[str, Any]:
        return property_filter_proto(self.name, self.op, self.val)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PropertyFilter):
            return (self.name, self.op, self.val) == (other.name, other.op, other.val)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.name, self.op, repr(self.val)))

    def __repr__(self) -> str:
        return f"PropertyFilter({self.name!r}, {self.op!r}, {self.val!r})"


class CompositeFilter(EntityFilter):
    """AND/OR/NOT combination of nested filters."""

    __slots__ = ("op", "filters")

    def __init__(self, op: Combinator, filters: Tuple[EntityFilter, ...]):
        if op not in ("AND", "OR", "NOT"):
            raise InvalidArgError(f"unsupported composite operator '{op}'")
        operands = tuple(filters)
        if not operands:
            raise InvalidArgError(f"{op} filter requires at least one operand")
        if op == "NOT" and len(operands) != 1:
            raise InvalidArgError("NOT filter requires exactly one operand")
        for idx, operand in enumerate(operands):
            if not is_filter(operand):
                raise TypeError(f"{op} operand {idx} must be a PropertyFilter or CompositeFilter")
        object.__setattr__(self, "op", op)
        object.__setattr__(self, "filters", operands)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("filters are immutable")

    def to_proto(self) -> Dict[str, Any]:
        return {
            "compositeFilter": {
                "op": self.op,
                "filters": [operand.to_proto() for operand in self.filters],
            }
        }

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CompositeFilter):
            return (self.op, self.filters) == (other.op, other.filters)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.op, self.filters))

    def __repr__(self) -> str:
        return f"CompositeFilter({self.op!r}, {list(self.filters)!r})"


def is_filter(value: Any) -> bool:
    return isinstance(value, EntityFilter)


def and_(*filters: EntityFilter) -> CompositeFilter:
    return CompositeFilter("AND", filters)


def or_(*filters: EntityFilter) -> CompositeFilter:
    return CompositeFilter("OR", filters)


def not_(entity_filter: EntityFilter) -> CompositeFilter:
    return CompositeFilter("NOT", (entity_filter,))
