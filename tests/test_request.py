import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import pytest

from dsquery import (
    Datastore,
    DecodeError,
    InvalidArgError,
    Key,
    MoreResults,
    PropertyFilter,
    Query,
    RunQueryInfo,
    Transaction,
)
from dsquery.request import build_run_query_request


def page(
    names: List[str],
    more_results: Any,
    end_cursor: Optional[str] = None,
    skipped: int = 0,
) -> Dict[str, Any]:
    batch: Dict[str, Any] = {
        "entityResults": [
            {
                "entity": {
                    "key": {"path": [{"kind": "Task", "name": name}]},
                    "properties": {"name": {"stringValue": name}},
                }
            }
            for name in names
        ],
        "moreResults": more_results,
        "skippedResults": skipped,
    }
    if end_cursor is not None:
        batch["endCursor"] = end_cursor
    return {"batch": batch}


class ScriptedClient:
    """Returns the scripted responses in order and records every request."""

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.call_options: List[Mapping[str, Any]] = []

    def run_query(self, request: Dict[str, Any], **call_options: Any) -> Any:
        self.requests.append(request)
        self.call_options.append(call_options)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class AsyncScriptedClient(ScriptedClient):
    def __init__(self, responses: List[Any], gate: Optional[asyncio.Event] = None) -> None:
        super().__init__(responses)
        self.gate = gate
        self.cancelled = 0
        self.waiting = False

    async def _respond(self, response: Any) -> Any:
        try:
            if self.gate is not None and len(self.requests) > 1:
                self.waiting = True
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        if isinstance(response, BaseException):
            raise response
        return response

    def run_query(self, request: Dict[str, Any], **call_options: Any) -> Any:
        self.requests.append(request)
        self.call_options.append(call_options)
        return self._respond(self.responses.pop(0))


def names(entities: List[Any]) -> List[str]:
    return [entity["name"] for entity in entities]


def test_run_returns_single_page_without_auto_paging() -> None:
    client = ScriptedClient([page(["a", "b"], "NOT_FINISHED", "X")])
    ds = Datastore(client, project_id="proj")

    entities, info = ds.create_query("Task").run()

    assert names(entities) == ["a", "b"]
    assert entities[0].key == Key(["Task", "a"])
    assert info == RunQueryInfo(more_results=MoreResults.NOT_FINISHED, end_cursor="X")
    assert len(client.requests) == 1


def test_manual_paging_with_run() -> None:
    client = ScriptedClient(
        [page(["a"], "NOT_FINISHED", "X"), page(["b"], "NO_MORE_RESULTS", "Y")]
    )
    q = Datastore(client).create_query("Task")

    first, info = q.run()
    q.start(info.end_cursor)
    second, info = q.run()

    assert names(first + second) == ["a", "b"]
    assert "startCursor" not in client.requests[0]["query"]
    assert client.requests[1]["query"]["startCursor"] == "X"
    assert info.more_results is MoreResults.NO_MORE_RESULTS


def test_request_shape() -> None:
    client = ScriptedClient([page([], "NO_MORE_RESULTS")])
    ds = Datastore(client, project_id="proj", namespace="default-ns")
    q = ds.create_query("other-ns", "Task").filter_by_tree(PropertyFilter("done", "=", False)).limit(3)

    q.run({"consistency": "eventual", "call_options": {"timeout": 5.0}})

    request = client.requests[0]
    assert request["projectId"] == "proj"
    assert request["partitionId"] == {"namespaceId": "other-ns"}
    assert request["readOptions"] == {"readConsistency": "EVENTUAL"}
    assert request["query"]["limit"] == 3
    assert "explainOptions" not in request
    assert client.call_options[0] == {"timeout": 5.0}


def test_scope_namespace_is_default_partition() -> None:
    ds = Datastore(ScriptedClient([]), project_id="proj", namespace="ns")
    request = build_run_query_request(ds, ds.create_query("Task"))
    assert request["partitionId"] == {"namespaceId": "ns"}
    assert "readOptions" not in request


def test_project_id_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATASTORE_PROJECT_ID", raising=False)
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "env-project")
    assert Datastore(ScriptedClient([])).project_id == "env-project"
    monkeypatch.setenv("DATASTORE_PROJECT_ID", "ds-project")
    assert Datastore(ScriptedClient([])).project_id == "ds-project"


def test_read_time_is_rendered_as_rfc3339() -> None:
    ds = Datastore(ScriptedClient([]), project_id="proj")
    stamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    request = build_run_query_request(ds, ds.create_query("Task"), {"read_time": stamp})
    assert request["readOptions"] == {"readTime": "2024-05-01T12:30:00.000000Z"}

    millis = build_run_query_request(ds, ds.create_query("Task"), {"read_time": 0})
    assert millis["readOptions"] == {"readTime": "1970-01-01T00:00:00.000000Z"}


def test_invalid_read_options() -> None:
    ds = Datastore(ScriptedClient([]), project_id="proj")
    q = ds.create_query("Task")
    with pytest.raises(InvalidArgError, match="strong"):
        build_run_query_request(ds, q, {"consistency": "sometimes"})  # type: ignore[typeddict-item]
    with pytest.raises(InvalidArgError):
        build_run_query_request(
            ds, q, {"consistency": "strong", "read_time": datetime.now(timezone.utc)}
        )


def test_transaction_reads_carry_transaction_id() -> None:
    client = ScriptedClient([page(["a"], "NO_MORE_RESULTS")])
    tx = Datastore(client, project_id="proj").transaction("tx-1")
    assert isinstance(tx, Transaction)

    entities, _ = tx.create_query("Task").run()

    assert names(entities) == ["a"]
    assert client.requests[0]["readOptions"] == {"transaction": "tx-1"}


def test_consistency_inside_transaction_is_rejected() -> None:
    client = ScriptedClient([])
    tx = Datastore(client).transaction("tx-1")
    with pytest.raises(InvalidArgError, match="transaction"):
        tx.create_query("Task").run({"consistency": "strong"})
    assert client.requests == []


def test_explain_options_and_metrics() -> None:
    response = page(["a"], "NO_MORE_RESULTS")
    response["explainMetrics"] = {
        "planSummary": {"indexesUsed": [{"query_scope": "Collection", "properties": "(__name__ ASC)"}]},
        "executionStats": {
            "resultsReturned": "1",
            "executionDuration": "0.01s",
            "readOperations": "2",
            "debugStats": {"index_entries_scanned": "1", "documents_scanned": "1"},
        },
    }
    client = ScriptedClient([response])

    _, info = Datastore(client).create_query("Task").run({"explain_options": {"analyze": True}})

    assert client.requests[0]["explainOptions"] == {"analyze": True}
    assert info.explain_metrics is not None
    assert info.explain_metrics.plan_summary is not None
    assert info.explain_metrics.plan_summary.indexes_used[0]["query_scope"] == "Collection"
    stats = info.explain_metrics.execution_stats
    assert stats is not None
    assert stats.results_returned == 1
    assert stats.read_operations == 2
    assert stats.debug_stats == {"index_entries_scanned": "1", "documents_scanned": "1"}


def test_transport_errors_surface_verbatim() -> None:
    boom = ConnectionError("unavailable")
    client = ScriptedClient([boom])
    with pytest.raises(ConnectionError) as excinfo:
        Datastore(client).create_query("Task").run()
    assert excinfo.value is boom


def test_unknown_more_results_is_a_decode_error() -> None:
    client = ScriptedClient([page(["a"], "MAYBE_LATER", "X")])
    with pytest.raises(DecodeError, match="MAYBE_LATER"):
        Datastore(client).create_query("Task").run()


def test_stream_pages_until_no_more_results() -> None:
    client = ScriptedClient(
        [page(["a", "b"], "NOT_FINISHED", "X"), page(["c"], "NO_MORE_RESULTS", "Y")]
    )
    seen: List[RunQueryInfo] = []
    q = Datastore(client).create_query("Task")

    stream = q.run_stream(on_info=seen.append)
    assert client.requests == []
    result = names(list(stream))

    assert result == ["a", "b", "c"]
    assert len(client.requests) == 2
    assert "startCursor" not in client.requests[0]["query"]
    assert client.requests[1]["query"]["startCursor"] == "X"
    assert [info.more_results for info in seen] == [
        MoreResults.NOT_FINISHED,
        MoreResults.NO_MORE_RESULTS,
    ]
    assert stream.finished
    assert stream.info is seen[-1]
    assert q.start_val is None


def test_stream_reduces_limit_and_offset_between_pages() -> None:
    client = ScriptedClient(
        [
            page(["a", "b"], "NOT_FINISHED", "X", skipped=3),
            page(["c"], "MORE_RESULTS_AFTER_LIMIT", "Y"),
        ]
    )
    q = Datastore(client).create_query("Task").limit(3).offset(5)

    assert names(list(q.run_stream())) == ["a", "b", "c"]
    assert client.requests[0]["query"]["limit"] == 3
    assert client.requests[0]["query"]["offset"] == 5
    assert client.requests[1]["query"]["limit"] == 1
    assert client.requests[1]["query"]["offset"] == 2
    assert q.limit_val == 3


def test_stream_stops_on_more_results_after_cursor() -> None:
    client = ScriptedClient([page(["a"], "MORE_RESULTS_AFTER_CURSOR", "X")])
    stream = Datastore(client).create_query("Task").end("X").run_stream()
    assert names(list(stream)) == ["a"]
    assert len(client.requests) == 1
    assert stream.finished


def test_stream_close_after_first_page_prevents_second_request() -> None:
    client = ScriptedClient(
        [page(["a", "b"], "NOT_FINISHED", "X"), page(["c"], "NO_MORE_RESULTS")]
    )
    with Datastore(client).create_query("Task").run_stream() as stream:
        assert next(stream)["name"] == "a"
        assert next(stream)["name"] == "b"
    assert stream.closed
    with pytest.raises(StopIteration):
        next(stream)
    assert len(client.requests) == 1


def test_stream_error_ends_stream_but_keeps_delivered_entities() -> None:
    client = ScriptedClient([page(["a"], "NOT_FINISHED", "X"), TimeoutError("deadline")])
    stream = Datastore(client).create_query("Task").run_stream()
    delivered: List[str] = []
    with pytest.raises(TimeoutError):
        for entity in stream:
            delivered.append(entity["name"])
    assert delivered == ["a"]
    assert stream.closed
    assert list(stream) == []


def test_stream_on_info_error_closes_stream() -> None:
    client = ScriptedClient(
        [page(["a", "b"], "NOT_FINISHED", "X"), page(["c"], "NO_MORE_RESULTS")]
    )

    def reject(info: RunQueryInfo) -> None:
        raise RuntimeError("listener failed")

    stream = Datastore(client).create_query("Task").run_stream(on_info=reject)
    with pytest.raises(RuntimeError, match="listener failed"):
        next(stream)
    assert stream.closed
    assert list(stream) == []
    assert len(client.requests) == 1


def test_stream_not_finished_without_cursor_is_a_decode_error() -> None:
    client = ScriptedClient([page(["a"], "NOT_FINISHED")])
    stream = Datastore(client).create_query("Task").run_stream()
    with pytest.raises(DecodeError, match="end cursor"):
        list(stream)
    assert len(client.requests) == 1


def test_stream_logs_round_trips(caplog: pytest.LogCaptureFixture) -> None:
    client = ScriptedClient([page(["a"], "NO_MORE_RESULTS")])
    with caplog.at_level(logging.DEBUG, logger="dsquery.request"):
        list(Datastore(client).create_query("Task").run_stream())
    assert any("runQuery" in record.getMessage() for record in caplog.records)


def test_async_run_returns_awaitable() -> None:
    client = AsyncScriptedClient([page(["a"], "NO_MORE_RESULTS")])

    async def run() -> Any:
        return await Datastore(client).create_query("Task").run()

    entities, info = asyncio.run(run())
    assert names(entities) == ["a"]
    assert info.more_results is MoreResults.NO_MORE_RESULTS


def test_async_stream_iterates_pages() -> None:
    client = AsyncScriptedClient(
        [page(["a"], "NOT_FINISHED", "X"), page(["b", "c"], "NO_MORE_RESULTS")]
    )

    async def collect() -> List[str]:
        results = []
        async with Datastore(client).create_query("Task").run_stream() as stream:
            async for entity in stream:
                results.append(entity["name"])
        return results

    assert asyncio.run(collect()) == ["a", "b", "c"]
    assert client.requests[1]["query"]["startCursor"] == "X"


def test_async_stream_close_cancels_in_flight_request() -> None:
    async def run() -> None:
        gate = asyncio.Event()
        client = AsyncScriptedClient(
            [page(["a"], "NOT_FINISHED", "X"), page(["b"], "NO_MORE_RESULTS")], gate
        )
        stream = Datastore(client).create_query("Task").run_stream()
        first = await stream.__anext__()
        assert first["name"] == "a"

        waiter = asyncio.ensure_future(stream.__anext__())
        while not client.waiting:
            await asyncio.sleep(0)
        await stream.aclose()

        with pytest.raises(StopAsyncIteration):
            await waiter
        assert client.cancelled == 1
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert len(client.requests) == 2

    asyncio.run(run())


def test_sync_iteration_rejects_async_client() -> None:
    client = AsyncScriptedClient([page(["a"], "NO_MORE_RESULTS")])
    stream = Datastore(client).create_query("Task").run_stream()
    with pytest.raises(TypeError, match="async for"):
        next(stream)


def test_datastore_requires_client() -> None:
    with pytest.raises(TypeError):
        Datastore(object())  # type: ignore[arg-type]


def test_create_query_forms() -> None:
    ds = Datastore(ScriptedClient([]), project_id="proj")
    assert isinstance(ds.create_query("Task"), Query)
    assert ds.create_query("Task").scope is ds
    assert ds.create_query("ns", "Task").namespace == "ns"
    assert ds.create_query(["Task"]).kinds == ["Task"]
    assert ds.key(["Task", 1]).project_id == "proj"
