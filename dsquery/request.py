"""Run queries through a scope's RPC client and page through the results."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from .entity import Entity, WrapNumbers, entity_from_proto, timestamp_to_rfc3339
from .errors import DecodeError, InvalidArgError
from .info import MoreResults, RunQueryInfo, decode_run_query_info
from .query import Query, query_to_proto

if TYPE_CHECKING:
    from .scope import Datastore, RunQueryOptions, Transaction

    Scope = Union[Datastore, Transaction]

logger = logging.getLogger(__name__)

RunQueryResponse = Tuple[List[Entity], RunQueryInfo]

_CONSISTENCY = {"strong": "STRONG", "eventual": "EVENTUAL"}


def _read_time_value(value: Union[datetime, int, float]) -> str:
    if isinstance(value, datetime):
        return timestamp_to_rfc3339(value)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidArgError("read_time must be a datetime or epoch milliseconds")
    return timestamp_to_rfc3339(datetime.fromtimestamp(value / 1000.0, tz=timezone.utc))


def _read_options(scope: "Scope", options: Mapping[str, Any]) -> Dict[str, Any]:
    transaction_id = getattr(scope, "transaction_id", None)
    consistency = options.get("consistency")
    read_time = options.get("read_time")
    if consistency is not None and read_time is not None:
        raise InvalidArgError("consistency and read_time cannot be combined")
    if transaction_id is not None:
        if consistency is not None:
            raise InvalidArgError("read consistency cannot be specified in a transaction")
        if read_time is not None:
            raise InvalidArgError("read_time cannot be specified in a transaction")
        return {"transaction": transaction_id}
    if consistency is not None:
        mode = _CONSISTENCY.get(str(consistency).lower())
        if mode is None:
            raise InvalidArgError("consistency must be 'strong' or 'eventual'")
        return {"readConsistency": mode}
    if read_time is not None:
        return {"readTime": _read_time_value(read_time)}
    return {}


def build_run_query_request(
    scope: "Scope",
    query: Query,
    options: Optional["RunQueryOptions"] = None,
) -> Dict[str, Any]:
    """Assemble the ``runQuery`` request body for ``query`` in ``scope``."""
    opts: Mapping[str, Any] = options or {}
    request: Dict[str, Any] = {}
    if scope.project_id:
        request["projectId"] = scope.project_id
    namespace = query.namespace or scope.namespace
    if namespace:
        request["partitionId"] = {"namespaceId": namespace}
    request["query"] = query_to_proto(query)
    read_options = _read_options(scope, opts)
    if read_options:
        request["readOptions"] = read_options
    explain = opts.get("explain_options")
    if explain is not None:
        request["explainOptions"] = {"analyze": bool(explain.get("analyze", False))}
    return request


def _send(scope: "Scope", request: Dict[str, Any], options: Mapping[str, Any]) -> Any:
    call_options = dict(options.get("call_options") or {})
    query = request["query"]
    logger.debug(
        "runQuery kind=%s start_cursor=%r limit=%s offset=%s",
        [kind["name"] for kind in query["kind"]],
        query.get("startCursor"),
        query.get("limit"),
        query.get("offset"),
    )
    return scope.client.run_query(request, **call_options)


def decode_entities(response: Mapping[str, Any], wrap_numbers: WrapNumbers = False) -> List[Entity]:
    batch = response.get("batch") or {}
    results = batch.get("entityResults") or []
    return [entity_from_proto(result.get("entity") or {}, wrap_numbers=wrap_numbers) for result in results]


def _decode_response(response: Mapping[str, Any], wrap_numbers: WrapNumbers) -> RunQueryResponse:
    if not isinstance(response, Mapping):
        raise DecodeError("runQuery response must be a mapping")
    info = decode_run_query_info(response)
    return decode_entities(response, wrap_numbers), info


async def _decode_async(pending: Awaitable[Mapping[str, Any]], wrap_numbers: WrapNumbers) -> RunQueryResponse:
    response = await pending
    return _decode_response(response, wrap_numbers)


def run_query(
    scope: "Scope",
    query: Query,
    options: Optional["RunQueryOptions"] = None,
) -> Union[RunQueryResponse, Awaitable[RunQueryResponse]]:
    """Run a single round trip and return ``(entities, info)``.

    With an asynchronous client the return value is an awaitable resolving
    to the same pair.
    """
    opts: Mapping[str, Any] = options or {}
    request = build_run_query_request(scope, query, options)
    response = _send(scope, request, opts)
    wrap_numbers = opts.get("wrap_numbers", False)
    if inspect.isawaitable(response):
        return _decode_async(response, wrap_numbers)
    return _decode_response(response, wrap_numbers)


class QueryStream:
    """Lazy stream of entities spanning as many round trips as needed.

    Iterate with ``for`` when the client is synchronous and with ``async
    for`` when it returns awaitables. A page is only requested once every
    entity of the previous page has been consumed. ``info`` holds the most
    recent page's RunQueryInfo, ``pages`` all of them, and ``finished``
    becomes True once the store reports no further pages.
    """

    def __init__(
        self,
        scope: "Scope",
        query: Query,
        options: Optional["RunQueryOptions"] = None,
        *,
        on_info: Optional[Callable[[RunQueryInfo], None]] = None,
    ):
        self._scope = scope
        self._query = query.copy()
        self._options: Dict[str, Any] = dict(options or {})
        self._on_info = on_info
        self._buffer: Deque[Entity] = deque()
        self._pending: Optional["asyncio.Future[Any]"] = None
        self._closed = False
        self.finished = False
        self.info: Optional[RunQueryInfo] = None
        self.pages: List[RunQueryInfo] = []
        self.request_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "QueryStream":
        return self

    def __next__(self) -> Entity:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed or self.finished:
                raise StopIteration
            response = self._issue()
            if inspect.isawaitable(response):
                if inspect.iscoroutine(response):
                    response.close()
                self._closed = True
                raise TypeError("client returned an awaitable; iterate this stream with 'async for'")
            self._accept(response)

    def __aiter__(self) -> "QueryStream":
        return self

    async def __anext__(self) -> Entity:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._closed or self.finished:
                raise StopAsyncIteration
            response = self._issue()
            if inspect.isawaitable(response):
                self._pending = asyncio.ensure_future(response)
                try:
                    response = await self._pending
                except asyncio.CancelledError:
                    if self._closed:
                        raise StopAsyncIteration from None
                    raise
                except BaseException:
                    self._closed = True
                    raise
                finally:
                    self._pending = None
            if self._closed:
                raise StopAsyncIteration
            self._accept(response)

    def __enter__(self) -> "QueryStream":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    async def __aenter__(self) -> "QueryStream":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    def close(self) -> None:
        """Stop the stream; no further round trips are issued and an in-flight one is cancelled."""
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        if self._pending is not None and not self._pending.done():
            logger.debug("cancelling in-flight runQuery after %d request(s)", self.request_count)
            self._pending.cancel()

    async def aclose(self) -> None:
        pending = self._pending
        self.close()
        if pending is not None and not pending.done():
            await asyncio.wait([pending])

    def _issue(self) -> Any:
        request = build_run_query_request(self._scope, self._query, self._options)
        self.request_count += 1
        try:
            return _send(self._scope, request, self._options)
        except BaseException:
            self._closed = True
            raise

    def _accept(self, response: Mapping[str, Any]) -> None:
        try:
            entities, info = _decode_response(response, self._options.get("wrap_numbers", False))
            skipped = int((response.get("batch") or {}).get("skippedResults") or 0)
        except BaseException:
            self._closed = True
            raise
        self._buffer.extend(entities)
        self.info = info
        self.pages.append(info)
        if self._on_info is not None:
            try:
                self._on_info(info)
            except BaseException:
                self.close()
                raise
        if info.more_results is not MoreResults.NOT_FINISHED:
            self.finished = True
            logger.debug(
                "query stream finished after %d request(s): %s",
                self.request_count,
                info.more_results.value,
            )
            return
        if not info.end_cursor:
            self._closed = True
            raise DecodeError("NOT_FINISHED batch is missing an end cursor")
        self._advance(len(entities), skipped, info.end_cursor)

    def _advance(self, returned: int, skipped: int, end_cursor: str) -> None:
        query = self._query
        query.start(end_cursor)
        if query.offset_val != -1:
            query.offset(max(query.offset_val - skipped, 0))
        if query.limit_val > -1:
            query.limit(max(query.limit_val - returned, 0))


def run_query_stream(
    scope: "Scope",
    query: Query,
    options: Optional["RunQueryOptions"] = None,
    *,
    on_info: Optional[Callable[[RunQueryInfo], None]] = None,
) -> QueryStream:
    return QueryStream(scope, query, options, on_info=on_info)
