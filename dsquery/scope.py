"""Execution scopes: the database-level Datastore and transaction-level Transaction."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, Union

from typing_extensions import Literal, NotRequired, Protocol, TypedDict

from .entity import Key, WrapNumbers
from .errors import InvalidArgError
from .info import MoreResults, RunQueryInfo
from .query import Query
from .request import QueryStream, RunQueryResponse, run_query, run_query_stream

_PROJECT_ENV_VARS = ("DATASTORE_PROJECT_ID", "GOOGLE_CLOUD_PROJECT")


class ExplainOptions(TypedDict, total=False):
    analyze: bool


class RunQueryOptions(TypedDict, total=False):
    consistency: Literal["strong", "eventual"]
    read_time: Union[datetime, int, float]
    explain_options: ExplainOptions
    call_options: Mapping[str, Any]
    wrap_numbers: WrapNumbers


class RunQueryRequest(TypedDict):
    query: Mapping[str, Any]
    projectId: NotRequired[str]
    partitionId: NotRequired[Mapping[str, str]]
    readOptions: NotRequired[Mapping[str, Any]]
    explainOptions: NotRequired[Mapping[str, Any]]


class RunQueryClient(Protocol):
    """Low-level RPC client the scopes send ``runQuery`` requests through.

    ``run_query`` returns the raw response mapping (``{"batch": {...},
    "explainMetrics": {...}}``) or an awaitable resolving to it. Transport
    errors it raises reach the caller unchanged.
    """

    def run_query(
        self, request: RunQueryRequest, **call_options: Any
    ) -> Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]:
        ...


def _default_project_id() -> Optional[str]:
    for name in _PROJECT_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return value
    return None


class _QueryScope:
    client: RunQueryClient
    project_id: Optional[str]
    namespace: Optional[str]

    def create_query(self, *args: Union[str, Sequence[str], None]) -> Query:
        """Create a query bound to this scope.

        ``create_query(kind)`` uses the scope's namespace;
        ``create_query(namespace, kind)`` overrides it for this query.
        """
        if len(args) == 1:
            return Query(self, args[0])  # type: ignore[arg-type]
        if len(args) == 2:
            namespace = args[0]
            if namespace is not None and not isinstance(namespace, str):
                raise TypeError("namespace must be a string")
            return Query(self, args[1], namespace=namespace)  # type: ignore[arg-type]
        raise TypeError("create_query() takes (kind) or (namespace, kind)")

    def run_query(
        self, query: Query, options: Optional[RunQueryOptions] = None
    ) -> Union[RunQueryResponse, Awaitable[RunQueryResponse]]:
        return run_query(self, query, options)  # type: ignore[arg-type]

    def run_query_stream(
        self,
        query: Query,
        options: Optional[RunQueryOptions] = None,
        *,
        on_info: Optional[Callable[[RunQueryInfo], None]] = None,
    ) -> QueryStream:
        return run_query_stream(self, query, options, on_info=on_info)  # type: ignore[arg-type]


class Datastore(_QueryScope):
    """Database-level scope wrapped around an RPC client."""

    MORE_RESULTS_AFTER_CURSOR = MoreResults.MORE_RESULTS_AFTER_CURSOR
    MORE_RESULTS_AFTER_LIMIT = MoreResults.MORE_RESULTS_AFTER_LIMIT
    NO_MORE_RESULTS = MoreResults.NO_MORE_RESULTS
    NOT_FINISHED = MoreResults.NOT_FINISHED

    def __init__(
        self,
        client: RunQueryClient,
        *,
        project_id: Optional[str] = None,
        namespace: Optional[str] = None,
    ):
        if client is None or not callable(getattr(client, "run_query", None)):
            raise TypeError("Datastore requires a client with a run_query() method")
        self.client = client
        self.project_id = project_id or _default_project_id()
        self.namespace = namespace or None

    def key(self, path: Union[str, Sequence[Union[str, int]]], *, namespace: Optional[str] = None) -> Key:
        return Key(path, namespace=namespace or self.namespace, project_id=self.project_id)

    def transaction(self, transaction_id: Union[str, bytes]) -> "Transaction":
        return Transaction(self, transaction_id)

    def __repr__(self) -> str:
        return f"Datastore(project_id={self.project_id!r}, namespace={self.namespace!r})"


class Transaction(_QueryScope):
    """Transaction-level scope; its queries read inside the given transaction.

    Beginning, committing and rolling back the transaction happen elsewhere;
    this scope only carries the identifier into each read.
    """

    def __init__(self, datastore: Datastore, transaction_id: Union[str, bytes]):
        if not isinstance(datastore, Datastore):
            raise TypeError("Transaction requires a Datastore")
        if not transaction_id:
            raise InvalidArgError("transaction_id must be non-empty")
        self.datastore = datastore
        self.transaction_id = transaction_id

    @property
    def client(self) -> RunQueryClient:  # type: ignore[override]
        return self.datastore.client

    @property
    def project_id(self) -> Optional[str]:  # type: ignore[override]
        return self.datastore.project_id

    @property
    def namespace(self) -> Optional[str]:  # type: ignore[override]
        return self.datastore.namespace

    def __repr__(self) -> str:
        return f"Transaction(transaction_id={self.transaction_id!r})"
