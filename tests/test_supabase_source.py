# tests/test_supabase_source.py

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from ontrack.remote.supabase_source import SupabaseSolutionSource
from ontrack.tasks.errors import RemoteSourceError


class FakePostgrest:
    """
    Tiny PostgREST stand-in for httpx.MockTransport.

    Only understands the `eq.` filters the source sends; records every request.
    """

    def __init__(self) -> None:
        self.current_model: str | None = "m2"
        self.models: list[str] = ["m2", "m1"]  # newest first
        self.solutions: dict[str, list[dict[str, Any]]] = {}
        self.names: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.fail_table: str | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        table = request.url.path.rsplit("/", 1)[-1]
        if table == self.fail_table:
            return httpx.Response(500, json={"message": "boom"})

        params = request.url.params
        if table == "current_model":
            rows = [] if self.current_model is None else [{"model_id": self.current_model}]
        elif table == "model":
            rows = [{"model_id": m, "created_at": "2025-03-10T00:00:00Z"} for m in self.models]
        elif table == "task_solution":
            model_id = params["model_id"].removeprefix("eq.")
            rows = list(self.solutions.get(model_id, []))
            if params.get("limit"):
                rows = rows[: int(params["limit"])]
        elif table == "task":
            rows = [{"task_id": k, "name": v} for k, v in self.names.items()]
        else:
            return httpx.Response(404, json={"message": "unknown table"})
        return httpx.Response(200, json=rows)


def make_source(backend: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> SupabaseSolutionSource:
    return SupabaseSolutionSource(
        "https://example.supabase.co/",
        "anon-key",
        "user-1",
        transport=httpx.MockTransport(backend),
        **kwargs,
    )


def _row(task_id: str, start: int, end: int) -> dict[str, Any]:
    return {"task_id": task_id, "solution_json": {"start": start, "end": end}}


@pytest.mark.asyncio
async def test_fetch_snapshot_joins_names() -> None:
    backend = FakePostgrest()
    backend.solutions["m2"] = [_row("b", 12, 18), _row("a", 0, 6)]
    backend.names = {"a": "Write report", "b": "Gym"}
    source = make_source(backend)

    snapshot = await source.fetch_snapshot()
    await source.aclose()

    assert snapshot.model_id == "m2"
    assert [s["task_id"] for s in snapshot.solutions] == ["b", "a"]
    assert snapshot.names == {"a": "Write report", "b": "Gym"}

    names_request = backend.requests[-1]
    assert names_request.url.path == "/rest/v1/task"
    assert names_request.url.params["task_id"] == 'in.("a","b")'
    assert names_request.headers["apikey"] == "anon-key"
    assert names_request.headers["Authorization"] == "Bearer anon-key"


@pytest.mark.asyncio
async def test_user_token_is_sent_as_bearer() -> None:
    backend = FakePostgrest()
    source = make_source(backend, access_token="user-jwt")

    await source.current_model_id()
    await source.aclose()

    request = backend.requests[0]
    assert request.headers["Authorization"] == "Bearer user-jwt"
    assert request.url.params["user_id"] == "eq.user-1"


@pytest.mark.asyncio
async def test_falls_back_to_recent_model_with_solutions() -> None:
    backend = FakePostgrest()
    backend.solutions["m1"] = [_row("a", 0, 6)]
    source = make_source(backend)

    snapshot = await source.fetch_snapshot()
    await source.aclose()

    assert snapshot.model_id == "m1"
    assert len(snapshot.solutions) == 1


@pytest.mark.asyncio
async def test_no_solutions_anywhere_yields_empty_snapshot() -> None:
    backend = FakePostgrest()
    source = make_source(backend)

    snapshot = await source.fetch_snapshot()
    await source.aclose()

    assert snapshot.model_id == "m2"
    assert snapshot.solutions == []
    assert all(r.url.path != "/rest/v1/task" for r in backend.requests)


@pytest.mark.asyncio
async def test_fallback_disabled_keeps_current_model() -> None:
    backend = FakePostgrest()
    backend.solutions["m1"] = [_row("a", 0, 6)]
    source = make_source(backend, fallback_models=0)

    assert await source.resolve_model_id() == "m2"
    await source.aclose()


@pytest.mark.asyncio
async def test_missing_current_model_is_an_error() -> None:
    backend = FakePostgrest()
    backend.current_model = None
    source = make_source(backend)

    with pytest.raises(RemoteSourceError, match="No current model"):
        await source.fetch_snapshot()
    await source.aclose()


@pytest.mark.asyncio
async def test_http_error_is_wrapped() -> None:
    backend = FakePostgrest()
    backend.fail_table = "task_solution"
    source = make_source(backend)

    with pytest.raises(RemoteSourceError, match="task_solution: HTTP 500"):
        await source.fetch_snapshot()
    await source.aclose()


@pytest.mark.asyncio
async def test_non_array_body_is_rejected() -> None:
    source = make_source(lambda request: httpx.Response(200, json={"model_id": "m"}))

    with pytest.raises(RemoteSourceError, match="expected a JSON array"):
        await source.current_model_id()
    await source.aclose()


@pytest.mark.asyncio
async def test_transport_failure_is_wrapped() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    source = make_source(refuse)

    with pytest.raises(RemoteSourceError, match="ConnectError"):
        await source.current_model_id()
    await source.aclose()


def test_missing_url_or_user_is_rejected() -> None:
    with pytest.raises(ValueError):
        SupabaseSolutionSource("", "key", "user")
    with pytest.raises(ValueError):
        SupabaseSolutionSource("https://example.supabase.co", "key", "")
