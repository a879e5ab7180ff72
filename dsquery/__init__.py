"""Query construction and execution for a remote, schema-less entity store."""

from .entity import Double, Entity, GeoPoint, Int, Key
from .errors import (
    DatastoreError,
    DecodeError,
    ErrorCode,
    InvalidArgError,
    UnboundQueryError,
)
from .filter import CompositeFilter, PropertyFilter, and_, is_filter, not_, or_
from .info import (
    ExecutionStats,
    ExplainMetrics,
    MoreResults,
    PlanSummary,
    RunQueryInfo,
)
from .query import Query, query_to_proto
from .request import QueryStream
from .scope import Datastore, RunQueryClient, RunQueryOptions, Transaction

__version__ = "0.1.0"

__all__ = [
    "version",
    "Datastore",
    "Transaction",
    "Query",
    "QueryStream",
    "RunQueryClient",
    "RunQueryOptions",
    "query_to_proto",
    # Filters
    "PropertyFilter",
    "CompositeFilter",
    "and_",
    "or_",
    "not_",
    "is_filter",
    # Values
    "Key",
    "Entity",
    "Int",
    "Double",
    "GeoPoint",
    # Pagination info
    "MoreResults",
    "RunQueryInfo",
    "ExplainMetrics",
    "PlanSummary",
    "ExecutionStats",
    # Error types
    "ErrorCode",
    "DatastoreError",
    "InvalidArgError",
    "UnboundQueryError",
    "DecodeError",
]


def version() -> str:
    """Return the package version string."""
    return __version__
