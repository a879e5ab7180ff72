"""Fluent query builder and its translation to the structured-query wire form."""

from __future__ import annotations

import copy
import warnings
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .entity import Entity, Key, ValueInput
from .errors import InvalidArgError, UnboundQueryError
from .filter import (
    KEY_PROPERTY,
    EntityFilter,
    is_filter,
    normalize_operator,
    normalize_property,
    property_filter_proto,
)
from .info import RunQueryInfo

if TYPE_CHECKING:
    from .request import QueryStream
    from .scope import Datastore, RunQueryOptions, Transaction

    Scope = Union[Datastore, Transaction]

Cursor = Union[str, bytes, bytearray]

_LEGACY_FILTER_WARNED = False
_LEGACY_FILTER_MESSAGE = (
    "Providing Filter objects like CompositeFilter or PropertyFilter is recommended when using .filter"
)


def _warn_legacy_filter() -> None:
    global _LEGACY_FILTER_WARNED
    if _LEGACY_FILTER_WARNED:
        return
    _LEGACY_FILTER_WARNED = True
    warnings.warn(_LEGACY_FILTER_MESSAGE, DeprecationWarning, stacklevel=3)


def _normalize_names(names: Union[str, Sequence[str]], ctx: str) -> List[str]:
    if isinstance(names, str):
        return [names]
    if isinstance(names, Sequence):
        result: List[str] = []
        for name in names:
            if not isinstance(name, str):
                raise TypeError(f"{ctx}() property names must be strings")
            result.append(name)
        return result
    raise TypeError(f"{ctx}() requires a property name or a sequence of names")


def _normalize_kinds(kinds: Union[str, Sequence[str], None]) -> List[str]:
    if kinds is None:
        return []
    if isinstance(kinds, str):
        return [kinds]
    result: List[str] = []
    for kind in kinds:
        if not isinstance(kind, str) or not kind:
            raise InvalidArgError("kind names must be non-empty strings")
        result.append(kind)
    return result


class Query:
    """Query for entities of one kind, built by chaining calls.

    Every builder method mutates the query in place and returns it. The
    same query can be run again after changing it, e.g. after moving the
    start cursor to the end cursor of the previous page.
    """

    def __init__(
        self,
        scope: Optional["Scope"] = None,
        kinds: Union[str, Sequence[str], None] = None,
        *,
        namespace: Optional[str] = None,
    ):
        self.scope = scope
        self.namespace = namespace or None
        self.kinds = _normalize_kinds(kinds)

        self.filters: List[Dict[str, Any]] = []
        self.entity_filters: List[EntityFilter] = []
        self.orders: List[Dict[str, str]] = []
        self.group_by_val: List[str] = []
        self.select_val: List[str] = []

        # pagination
        self.start_val: Optional[Cursor] = None
        self.end_val: Optional[Cursor] = None
        self.limit_val = -1
        self.offset_val = -1

    def filter(self, property_or_filter: Union[str, EntityFilter], *args: Any) -> "Query":
        """Add a filter.

        ``filter(entity_filter)`` adds a PropertyFilter or CompositeFilter
        tree. ``filter(prop, value)`` and ``filter(prop, op, value)`` are the
        legacy forms; they still work but emit a one-time DeprecationWarning.
        """
        if not args:
            return self.filter_by_tree(property_or_filter)  # type: ignore[arg-type]
        if len(args) > 2:
            raise TypeError("filter() takes a filter object, (property, value) or (property, operator, value)")
        _warn_legacy_filter()
        if len(args) == 1:
            return self.filter_equals(property_or_filter, args[0])  # type: ignore[arg-type]
        return self.filter_with_operator(property_or_filter, args[0], args[1])  # type: ignore[arg-type]

    def filter_by_tree(self, entity_filter: EntityFilter) -> "Query":
        if not is_filter(entity_filter):
            raise TypeError("filter_by_tree() requires a PropertyFilter or CompositeFilter")
        self.entity_filters.append(entity_filter)
        return self

    def filter_equals(self, prop: str, value: ValueInput) -> "Query":
        return self._push_filter(prop, "=", value)

    def filter_with_operator(self, prop: str, op: str, value: ValueInput) -> "Query":
        return self._push_filter(prop, op, value)

    def has_ancestor(self, key: Key) -> "Query":
        return self._push_filter(KEY_PROPERTY, "HAS_ANCESTOR", key)

    def order(
        self,
        prop: str,
        options: Optional[Mapping[str, Any]] = None,
        *,
        descending: bool = False,
    ) -> "Query":
        if options is not None:
            descending = bool(options.get("descending", descending))
        self.orders.append(
            {"name": prop, "direction": "DESCENDING" if descending else "ASCENDING"}
        )
        return self

    def group_by(self, names: Union[str, Sequence[str]]) -> "Query":
        self.group_by_val = _normalize_names(names, "group_by")
        return self

    def select(self, names: Union[str, Sequence[str]]) -> "Query":
        self.select_val = _normalize_names(names, "select")
        return self

    def start(self, cursor: Cursor) -> "Query":
        self.start_val = cursor
        return self

    def end(self, cursor: Cursor) -> "Query":
        self.end_val = cursor
        return self

    def limit(self, n: int) -> "Query":
        self.limit_val = n
        return self

    def offset(self, n: int) -> "Query":
        self.offset_val = n
        return self

    def run(self, options: Optional["RunQueryOptions"] = None) -> Tuple[List[Entity], RunQueryInfo]:
        """Run the query and return one page of entities with its RunQueryInfo.

        No automatic paging happens here: when ``info.more_results`` is
        ``NOT_FINISHED``, call ``start(info.end_cursor)`` and run again.
        """
        return self._require_scope().run_query(self, options)

    def run_stream(self, options: Optional["RunQueryOptions"] = None, **kwargs: Any) -> "QueryStream":
        """Return a lazy stream over every entity, fetching pages as needed."""
        return self._require_scope().run_query_stream(self, options, **kwargs)

    def to_proto(self) -> Dict[str, Any]:
        return query_to_proto(self)

    def copy(self) -> "Query":
        clone = Query(self.scope, list(self.kinds), namespace=self.namespace)
        clone.filters = [dict(entry) for entry in self.filters]
        clone.entity_filters = list(self.entity_filters)
        clone.orders = [dict(entry) for entry in self.orders]
        clone.group_by_val = list(self.group_by_val)
        clone.select_val = list(self.select_val)
        clone.start_val = self.start_val
        clone.end_val = self.end_val
        clone.limit_val = self.limit_val
        clone.offset_val = self.offset_val
        return clone

    def _push_filter(self, prop: str, op: str, value: ValueInput) -> "Query":
        name = normalize_property(prop)
        operator = normalize_operator(op)
        property_filter_proto(name, operator, value)
        self.filters.append({"name": name, "op": operator, "val": value})
        return self

    def _require_scope(self) -> "Scope":
        if self.scope is None:
            raise UnboundQueryError()
        return self.scope

    def __repr__(self) -> str:
        return (
            f"Query(kinds={self.kinds!r}, namespace={self.namespace!r}, "
            f"filters={len(self.filters) + len(self.entity_filters)}, orders={len(self.orders)})"
        )


def _cursor_value(cursor: Cursor) -> Union[str, bytes]:
    if isinstance(cursor, bytearray):
        return bytes(cursor)
    return cursor


def query_to_proto(query: Query) -> Dict[str, Any]:
    """Translate a Query into the structured-query wire representation.

    Pure: the query is not modified and the result shares no mutable state
    with it, so calling this twice on an unchanged query gives equal output.
    """
    proto: Dict[str, Any] = {
        "kind": [{"name": kind} for kind in query.kinds],
        "order": [
            {"property": {"name": order["name"]}, "direction": order["direction"]}
            for order in query.orders
        ],
        "projection": [{"property": {"name": name}} for name in query.select_val],
        "distinctOn": [{"name": name} for name in query.group_by_val],
    }

    nodes: List[Dict[str, Any]] = [
        property_filter_proto(entry["name"], entry["op"], entry["val"]) for entry in query.filters
    ]
    nodes.extend(entity_filter.to_proto() for entity_filter in query.entity_filters)
    if len(nodes) == 1:
        proto["filter"] = nodes[0]
    elif nodes:
        proto["filter"] = {"compositeFilter": {"op": "AND", "filters": nodes}}

    if query.start_val is not None:
        proto["startCursor"] = _cursor_value(query.start_val)
    if query.end_val is not None:
        proto["endCursor"] = _cursor_value(query.end_val)
    if query.limit_val != -1:
        proto["limit"] = query.limit_val
    if query.offset_val != -1:
        proto["offset"] = query.offset_val
    return copy.deepcopy(proto)
