"""Pagination metadata returned alongside query results."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import DecodeError


class MoreResults(str, Enum):
    """State of the result set after a batch, as reported by the store."""

    MORE_RESULTS_TYPE_UNSPECIFIED = "MORE_RESULTS_TYPE_UNSPECIFIED"
    NOT_FINISHED = "NOT_FINISHED"
    MORE_RESULTS_AFTER_LIMIT = "MORE_RESULTS_AFTER_LIMIT"
    MORE_RESULTS_AFTER_CURSOR = "MORE_RESULTS_AFTER_CURSOR"
    NO_MORE_RESULTS = "NO_MORE_RESULTS"


# Numeric values used by the protobuf encoding of the enum.
_MORE_RESULTS_BY_NUMBER = {
    0: MoreResults.MORE_RESULTS_TYPE_UNSPECIFIED,
    1: MoreResults.NOT_FINISHED,
    2: MoreResults.MORE_RESULTS_AFTER_LIMIT,
    4: MoreResults.MORE_RESULTS_AFTER_CURSOR,
    3: MoreResults.NO_MORE_RESULTS,
}


@dataclass
class PlanSummary:
    indexes_used: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ExecutionStats:
    results_returned: Optional[int] = None
    execution_duration: Optional[Any] = None
    read_operations: Optional[int] = None
    debug_stats: Optional[Dict[str, Any]] = None


@dataclass
class ExplainMetrics:
    plan_summary: Optional[PlanSummary] = None
    execution_stats: Optional[ExecutionStats] = None


@dataclass
class RunQueryInfo:
    """Pagination info for one batch of results.

    ``end_cursor`` can be passed to ``Query.start`` to continue after the
    batch. ``more_results`` tells whether the store may have more entities:
    ``NOT_FINISHED`` means another request with the end cursor will return
    more, the ``AFTER_*`` members mean the limit or end cursor was reached,
    and ``NO_MORE_RESULTS`` means the result set is exhausted.
    """

    more_results: MoreResults = MoreResults.MORE_RESULTS_TYPE_UNSPECIFIED
    end_cursor: Optional[str] = None
    explain_metrics: Optional[ExplainMetrics] = None


def decode_more_results(raw: Union[str, int, MoreResults, None]) -> MoreResults:
    if raw is None:
        return MoreResults.MORE_RESULTS_TYPE_UNSPECIFIED
    if isinstance(raw, MoreResults):
        return raw
    if isinstance(raw, bool):
        raise DecodeError(f"unrecognized moreResults value {raw!r}")
    if isinstance(raw, int):
        try:
            return _MORE_RESULTS_BY_NUMBER[raw]
        except KeyError:
            raise DecodeError(f"unrecognized moreResults value {raw!r}") from None
    if isinstance(raw, str):
        try:
            return MoreResults(raw)
        except ValueError:
            raise DecodeError(f"unrecognized moreResults value {raw!r}") from None
    raise DecodeError(f"unrecognized moreResults value {raw!r}")


def decode_cursor(raw: Union[str, bytes, bytearray, None]) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        if not raw:
            return None
        return base64.b64encode(bytes(raw)).decode("ascii")
    if isinstance(raw, str):
        return raw or None
    raise DecodeError(f"cursor must be a string or bytes, got {type(raw)!r}")


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def decode_explain_metrics(raw: Optional[Mapping[str, Any]]) -> Optional[ExplainMetrics]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise DecodeError("explainMetrics must be an object when present")
    metrics = ExplainMetrics()
    plan = raw.get("planSummary")
    if plan is not None:
        metrics.plan_summary = PlanSummary(
            indexes_used=[dict(index) for index in plan.get("indexesUsed") or []]
        )
    stats = raw.get("executionStats")
    if stats is not None:
        debug_stats = stats.get("debugStats")
        metrics.execution_stats = ExecutionStats(
            results_returned=_optional_int(stats.get("resultsReturned")),
            execution_duration=stats.get("executionDuration"),
            read_operations=_optional_int(stats.get("readOperations")),
            debug_stats=dict(debug_stats) if debug_stats is not None else None,
        )
    return metrics


def decode_run_query_info(response: Mapping[str, Any]) -> RunQueryInfo:
    """Build the RunQueryInfo for a raw ``runQuery`` response."""
    batch = response.get("batch") or {}
    return RunQueryInfo(
        more_results=decode_more_results(batch.get("moreResults")),
        end_cursor=decode_cursor(batch.get("endCursor")),
        explain_metrics=decode_explain_metrics(response.get("explainMetrics")),
    )
