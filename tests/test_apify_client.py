import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from ugc_tracker.apify.client import (
    ApifyAPI,
    ApifyError,
    ApifyRunError,
    build_profile_scraper_input,
    is_valid_actor_id,
)


class FakeApify:
    """Just enough of the Apify v2 REST API for one run."""

    def __init__(self, statuses: List[str], items: Any = None, start_error: Any = None) -> None:
        self.statuses = list(statuses)
        self.items = items if items is not None else [{"id": "1"}, {"id": "2"}]
        self.start_error = start_error
        self.requests: List[Dict[str, Any]] = []

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v2/actor-tasks/{task_id}/runs", self.start_run)
        app.router.add_post("/v2/acts/{actor_id}/runs", self.start_run)
        app.router.add_get("/v2/actor-runs/{run_id}", self.get_run)
        app.router.add_get("/v2/datasets/{dataset_id}/items", self.get_items)
        return app

    def _record(self, request: web.Request, body: Any = None) -> None:
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "auth": request.headers.get("Authorization"),
                "body": body,
            }
        )

    async def start_run(self, request: web.Request) -> web.Response:
        self._record(request, await request.json())
        if self.start_error is not None:
            status, payload = self.start_error
            return web.json_response(payload, status=status)
        return web.json_response({"data": {"id": "run-1", "status": "READY", "defaultDatasetId": "ds-1"}}, status=201)

    async def get_run(self, request: web.Request) -> web.Response:
        self._record(request)
        status = self.statuses.pop(0) if self.statuses else "RUNNING"
        return web.json_response({"data": {"id": "run-1", "status": status, "defaultDatasetId": "ds-1"}})

    async def get_items(self, request: web.Request) -> web.Response:
        self._record(request)
        return web.json_response(self.items)


async def _with_server(fake: FakeApify, fn):
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    try:
        api = ApifyAPI(token="secret-token", base_url=str(server.make_url("/v2")), poll_interval=0.0, max_polls=3)
        return await fn(api)
    finally:
        await server.close()


def test_run_task_polls_and_fetches_items():
    fake = FakeApify(["RUNNING", "SUCCEEDED"])
    run_input = build_profile_scraper_input(["alice"])

    items = asyncio.run(_with_server(fake, lambda api: api.run_task("my-task", run_input)))

    assert items == [{"id": "1"}, {"id": "2"}]
    paths = [r["path"] for r in fake.requests]
    assert paths == [
        "/v2/actor-tasks/my-task/runs",
        "/v2/actor-runs/run-1",
        "/v2/actor-runs/run-1",
        "/v2/datasets/ds-1/items",
    ]
    assert fake.requests[0]["body"] == run_input
    assert fake.requests[-1]["query"] == {"format": "json"}
    assert all(r["auth"] == "Bearer secret-token" for r in fake.requests)


@pytest.mark.parametrize("status", ["FAILED", "ABORTED", "TIMED-OUT"])
def test_wait_for_run_raises_on_terminal_failure(status):
    fake = FakeApify([status])
    with pytest.raises(ApifyRunError) as exc:
        asyncio.run(_with_server(fake, lambda api: api.run_task("t", {})))
    assert status in str(exc.value)


def test_wait_for_run_times_out_after_max_polls():
    fake = FakeApify(["RUNNING"] * 10)
    with pytest.raises(ApifyRunError, match="timed out after 3 polls"):
        asyncio.run(_with_server(fake, lambda api: api.wait_for_run("run-1")))
    assert len(fake.requests) == 3


def test_start_actor_run_surfaces_apify_error_type():
    fake = FakeApify([], start_error=(404, {"error": {"type": "record-not-found", "message": "Actor was not found"}}))
    with pytest.raises(ApifyError) as exc:
        asyncio.run(_with_server(fake, lambda api: api.start_actor_run("nobody~nothing")))
    assert exc.value.status == 404
    assert exc.value.error_type == "record-not-found"
    assert "Actor was not found" in str(exc.value)


def test_dataset_must_be_a_list():
    fake = FakeApify([], items={"not": "a list"})
    with pytest.raises(ApifyError):
        asyncio.run(_with_server(fake, lambda api: api.list_dataset_items("ds-1")))


def test_non_json_dataset_body_is_an_apify_error():
    fake = FakeApify([])

    async def html_items(request: web.Request) -> web.Response:
        fake._record(request)
        return web.Response(text="<html>502 Bad Gateway</html>", content_type="text/html")

    fake.get_items = html_items
    with pytest.raises(ApifyError, match="invalid JSON") as exc:
        asyncio.run(_with_server(fake, lambda api: api.list_dataset_items("ds-1")))
    assert exc.value.status == 200


def test_run_status_that_is_not_an_object_is_an_apify_error():
    fake = FakeApify([])

    async def list_run(request: web.Request) -> web.Response:
        fake._record(request)
        return web.json_response(["SUCCEEDED"])

    fake.get_run = list_run
    with pytest.raises(ApifyError, match="unexpected status payload"):
        asyncio.run(_with_server(fake, lambda api: api.wait_for_run("run-1")))


def test_failed_start_is_attempted_once():
    fake = FakeApify([], start_error=(503, {"error": {"type": "server-error", "message": "try later"}}))
    with pytest.raises(ApifyError) as exc:
        asyncio.run(_with_server(fake, lambda api: api.start_task_run("t", {})))
    assert exc.value.status == 503
    assert [r["method"] for r in fake.requests] == ["POST"]


class _FakeResponse:
    status = 200

    def __init__(self, payload: Any) -> None:
        self.payload = payload

    async def json(self, content_type: Any = None) -> Any:
        return self.payload


class _FakeRequest:
    def __init__(self, outcome: Any) -> None:
        self.outcome = outcome

    async def __aenter__(self) -> _FakeResponse:
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return _FakeResponse(self.outcome)

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FlakySession:
    """Session whose GETs play back the given outcomes in order."""

    def __init__(self, outcomes: List[Any]) -> None:
        self.outcomes = list(outcomes)
        self.gets: List[str] = []

    def get(self, url: str, params: Any = None) -> _FakeRequest:
        self.gets.append(url)
        return _FakeRequest(self.outcomes.pop(0))


def test_get_is_retried_after_a_dropped_connection():
    api = ApifyAPI(token="t", base_url="http://apify.test/v2", poll_interval=0.0, request_attempts=3)
    session = FlakySession([aiohttp.ServerDisconnectedError(), {"data": {"status": "SUCCEEDED"}}])

    payload = asyncio.run(api._get_json_with_retry(session, "http://apify.test/v2/actor-runs/run-1"))

    assert payload == {"data": {"status": "SUCCEEDED"}}
    assert len(session.gets) == 2


def test_get_gives_up_after_request_attempts():
    api = ApifyAPI(token="t", base_url="http://apify.test/v2", poll_interval=0.0, request_attempts=2)
    session = FlakySession([aiohttp.ServerDisconnectedError(), asyncio.TimeoutError(), {"never": "reached"}])

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(api._get_json_with_retry(session, "http://apify.test/v2/datasets/ds-1/items"))
    assert len(session.gets) == 2


def test_missing_token_fails_before_any_request():
    api = ApifyAPI(token="", base_url="http://127.0.0.1:9/v2")
    with pytest.raises(ApifyError, match="APIFY_TOKEN"):
        asyncio.run(api.start_task_run("t", {}))


def test_profile_scraper_input():
    run_input = build_profile_scraper_input(["@alice", "bob"], results_per_page=5)
    assert run_input["profiles"] == ["@alice", "@bob"]
    assert run_input["profileScrapeSections"] == ["videos"]
    assert run_input["profileSorting"] == "latest"
    assert run_input["resultsPerPage"] == 5
    assert run_input["excludePinnedPosts"] is False
    assert not any(v for k, v in run_input.items() if k.startswith("shouldDownload"))


@pytest.mark.parametrize(
    "actor_id,ok",
    [
        ("clockworks~tiktok-scraper", True),
        ("12345678-abcd-1234-abcd-123456789abc", True),
        ("vB0foLluLnDBEWNgL", False),
        ("", False),
    ],
)
def test_is_valid_actor_id(actor_id, ok):
    assert is_valid_actor_id(actor_id) is ok
