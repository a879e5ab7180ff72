"""Property values exchanged with the entity store.

Filter values are encoded into the tagged wire representation used by the
structured query (``{"stringValue": ...}``, ``{"keyValue": ...}``, ...) and
entities returned by a query are decoded back into plain Python values.
Only the closed set of value kinds the store supports is accepted.
"""

from __future__ import annotations

import base64
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from typing_extensions import TypedDict

from .errors import InvalidArgError

_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1
_FRACTION = re.compile(r"\.(\d+)")


class Int:
    """Integer wrapper used when ``wrap_numbers`` asks for lossless integers."""

    __slots__ = ("value",)

    def __init__(self, value: Union[int, str]):
        text = str(value)
        try:
            parsed = int(text)
        except ValueError:
            raise ValueError(f"Int requires an integer value, got {value!r}") from None
        if parsed < _I64_MIN or parsed > _I64_MAX:
            raise ValueError("integer value must fit within signed 64-bit range")
        self.value = text

    def value_of(self) -> int:
        return int(self.value)

    def __int__(self) -> int:
        return int(self.value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Int):
            return self.value == other.value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Int", self.value))

    def __repr__(self) -> str:
        return f"Int({self.value})"


class Double:
    """Float wrapper forcing ``doubleValue`` encoding for integral numbers."""

    __slots__ = ("value",)

    def __init__(self, value: Union[float, int, str]):
        self.value = float(value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Double):
            return self.value == other.value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Double", self.value))

    def __repr__(self) -> str:
        return f"Double({self.value})"


class GeoPoint:
    __slots__ = ("latitude", "longitude")

    def __init__(self, latitude: float, longitude: float):
        self.latitude = float(latitude)
        self.longitude = float(longitude)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, GeoPoint):
            return (self.latitude, self.longitude) == (other.latitude, other.longitude)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.latitude, self.longitude))

    def __repr__(self) -> str:
        return f"GeoPoint({self.latitude}, {self.longitude})"


class Key:
    """Hierarchical entity key.

    ``path`` alternates kinds and identifiers, e.g. ``["Company", "Acme",
    "Employee", 42]``. A trailing kind without identifier makes the key
    incomplete.
    """

    __slots__ = ("path", "namespace", "project_id")

    def __init__(
        self,
        path: Union[str, Sequence[Union[str, int]]],
        *,
        namespace: Optional[str] = None,
        project_id: Optional[str] = None,
    ):
        items = [path] if isinstance(path, str) else list(path)
        if not items:
            raise InvalidArgError("a key requires at least one kind")
        for idx in range(0, len(items), 2):
            if not isinstance(items[idx], str) or not items[idx]:
                raise InvalidArgError(f"key path element {idx} must be a kind name")
        for idx in range(1, len(items), 2):
            ident = items[idx]
            if isinstance(ident, bool) or not isinstance(ident, (str, int)):
                raise InvalidArgError(f"key path element {idx} must be a name or numeric id")
        self.path = tuple(items)
        self.namespace = namespace
        self.project_id = project_id

    @property
    def kind(self) -> str:
        return self.path[-1] if len(self.path) % 2 == 1 else self.path[-2]

    @property
    def id_or_name(self) -> Optional[Union[str, int]]:
        if len(self.path) % 2 == 1:
            return None
        return self.path[-1]

    @property
    def parent(self) -> Optional["Key"]:
        cut = len(self.path) - (1 if len(self.path) % 2 == 1 else 2)
        if cut <= 0:
            return None
        return Key(self.path[:cut], namespace=self.namespace, project_id=self.project_id)

    def to_proto(self) -> Dict[str, Any]:
        elements: List[Dict[str, Any]] = []
        for idx in range(0, len(self.path), 2):
            element: Dict[str, Any] = {"kind": self.path[idx]}
            if idx + 1 < len(self.path):
                ident = self.path[idx + 1]
                if isinstance(ident, int):
                    element["id"] = str(ident)
                else:
                    element["name"] = ident
            elements.append(element)
        proto: Dict[str, Any] = {"path": elements}
        partition: Dict[str, str] = {}
        if self.project_id:
            partition["projectId"] = self.project_id
        if self.namespace:
            partition["namespaceId"] = self.namespace
        if partition:
            proto["partitionId"] = partition
        return proto

    @classmethod
    def from_proto(cls, proto: Mapping[str, Any]) -> "Key":
        path: List[Union[str, int]] = []
        for element in proto.get("path") or []:
            path.append(element["kind"])
            if element.get("id") is not None:
                path.append(int(element["id"]))
            elif element.get("name") is not None:
                path.append(element["name"])
        partition = proto.get("partitionId") or {}
        return cls(
            path,
            namespace=partition.get("namespaceId") or None,
            project_id=partition.get("projectId") or None,
        )

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Key):
            return (self.path, self.namespace, self.project_id) == (
                other.path,
                other.namespace,
                other.project_id,
            )
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.path, self.namespace, self.project_id))

    def __repr__(self) -> str:
        return f"Key({list(self.path)!r}, namespace={self.namespace!r})"


class Entity(dict):
    """Decoded entity; property values keyed by name, with the entity key attached."""

    def __init__(self, props: Optional[Mapping[str, Any]] = None, key: Optional[Key] = None):
        super().__init__(props or {})
        self.key = key


class IntegerTypeCastOptions(TypedDict, total=False):
    integer_type_cast_function: Callable[[str], Any]
    properties: Union[str, Sequence[str]]


WrapNumbers = Union[bool, IntegerTypeCastOptions, Mapping[str, Any]]

ValueInput = Optional[
    Union[
        str,
        int,
        float,
        bool,
        datetime,
        bytes,
        bytearray,
        memoryview,
        Key,
        Int,
        Double,
        GeoPoint,
        Mapping[str, Any],
        Sequence[Any],
    ]
]


def timestamp_to_rfc3339(value: datetime) -> str:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError("timestamp values must include timezone info")
    normalized = value.astimezone(timezone.utc).replace(tzinfo=None)
    return normalized.isoformat(timespec="microseconds") + "Z"


def rfc3339_to_timestamp(text: str) -> datetime:
    """Parse a wire timestamp into an aware UTC datetime.

    The wire carries up to nanosecond precision and any UTC offset;
    fractions are cut to microseconds before parsing.
    """
    raw = text.strip()
    if raw[-1:] in ("Z", "z"):
        raw = raw[:-1] + "+00:00"
    raw = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), raw, count=1)
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def encode_value(value: ValueInput) -> Dict[str, Any]:
    """Encode a Python value into its tagged wire form."""
    if value is None:
        return {"nullValue": "NULL_VALUE"}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, Int):
        return {"integerValue": value.value}
    if isinstance(value, Double):
        return {"doubleValue": value.value}
    if isinstance(value, int):
        if value < _I64_MIN or value > _I64_MAX:
            raise ValueError("integer value must fit within signed 64-bit range")
        return {"integerValue": str(value)}
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return {"doubleValue": str(value).replace("inf", "Infinity").replace("nan", "NaN")}
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"blobValue": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, datetime):
        return {"timestampValue": timestamp_to_rfc3339(value)}
    if isinstance(value, Key):
        return {"keyValue": value.to_proto()}
    if isinstance(value, GeoPoint):
        return {"geoPointValue": {"latitude": value.latitude, "longitude": value.longitude}}
    if isinstance(value, Entity):
        entity_value: Dict[str, Any] = {
            "properties": {name: encode_value(item) for name, item in value.items()}
        }
        if value.key is not None:
            entity_value["key"] = value.key.to_proto()
        return {"entityValue": entity_value}
    if isinstance(value, Mapping):
        for name in value.keys():
            if not isinstance(name, str):
                raise TypeError("embedded entity property names must be strings")
        return {
            "entityValue": {"properties": {name: encode_value(item) for name, item in value.items()}}
        }
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"unsupported property value type: {type(value)!r}")


def _should_wrap(wrap_numbers: WrapNumbers, prop: Optional[str]) -> Optional[Callable[[str], Any]]:
    if wrap_numbers is True:
        return Int
    if not wrap_numbers or not isinstance(wrap_numbers, Mapping):
        return None
    cast = wrap_numbers.get("integer_type_cast_function")
    if not callable(cast):
        raise InvalidArgError("wrap_numbers.integer_type_cast_function must be callable")
    properties = wrap_numbers.get("properties")
    if properties is None:
        return cast
    names = [properties] if isinstance(properties, str) else list(properties)
    return cast if prop in names else None


def decode_value(
    proto: Mapping[str, Any],
    *,
    wrap_numbers: WrapNumbers = False,
    prop: Optional[str] = None,
) -> Any:
    """Decode a tagged wire value into a Python value."""
    if "nullValue" in proto:
        return None
    if "booleanValue" in proto:
        return bool(proto["booleanValue"])
    if "integerValue" in proto:
        raw = str(proto["integerValue"])
        wrapper = _should_wrap(wrap_numbers, prop)
        if wrapper is not None:
            return wrapper(raw)
        return int(raw)
    if "doubleValue" in proto:
        return float(proto["doubleValue"])
    if "stringValue" in proto:
        return proto["stringValue"]
    if "blobValue" in proto:
        blob = proto["blobValue"]
        if isinstance(blob, (bytes, bytearray)):
            return bytes(blob)
        return base64.b64decode(blob)
    if "timestampValue" in proto:
        stamp = proto["timestampValue"]
        if isinstance(stamp, datetime):
            return stamp
        return rfc3339_to_timestamp(stamp)
    if "keyValue" in proto:
        return Key.from_proto(proto["keyValue"])
    if "geoPointValue" in proto:
        point = proto["geoPointValue"]
        return GeoPoint(point.get("latitude", 0.0), point.get("longitude", 0.0))
    if "entityValue" in proto:
        return entity_from_proto(proto["entityValue"], wrap_numbers=wrap_numbers)
    if "arrayValue" in proto:
        values = (proto["arrayValue"] or {}).get("values") or []
        return [decode_value(item, wrap_numbers=wrap_numbers, prop=prop) for item in values]
    raise TypeError(f"unsupported wire value: {sorted(proto.keys())!r}")


def entity_from_proto(proto: Mapping[str, Any], *, wrap_numbers: WrapNumbers = False) -> Entity:
    props = proto.get("properties") or {}
    decoded = {
        name: decode_value(value, wrap_numbers=wrap_numbers, prop=name)
        for name, value in props.items()
    }
    key_proto = proto.get("key")
    key = Key.from_proto(key_proto) if key_proto else None
    return Entity(decoded, key)
