from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from lucid_automation.jobs import (
    DomainBlockedError,
    HttpAutomationApi,
    RequestValidationError,
    TransportError,
)


def _api(handler) -> HttpAutomationApi:
    return HttpAutomationApi("http://lucid.test/", transport=httpx.MockTransport(handler))


def _call(api: HttpAutomationApi, coro_factory):
    async def scenario():
        async with api:
            return await coro_factory(api)

    return asyncio.run(scenario())


def test_start_job_posts_type_and_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"success": True, "job": {"id": "job-1"}})

    data = _call(_api(handler), lambda api: api.start_job("my project", "frontend:test", {"stagedPaths": ["a.ts"]}))

    assert data["job"]["id"] == "job-1"
    assert seen[0].method == "POST"
    assert seen[0].url.raw_path == b"/api/projects/my%20project/jobs"
    assert json.loads(seen[0].content) == {"type": "frontend:test", "payload": {"stagedPaths": ["a.ts"]}}


@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        (400, RequestValidationError),
        (404, RequestValidationError),
        (422, RequestValidationError),
        (409, DomainBlockedError),
        (500, TransportError),
        (503, TransportError),
    ],
)
def test_status_codes_map_to_error_taxonomy(status: int, error_type: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"success": False, "error": "Nope"})

    with pytest.raises(error_type) as excinfo:
        _call(_api(handler), lambda api: api.get_job("demo", "job-1"))

    assert excinfo.value.message == "Nope"
    assert excinfo.value.status_code == status


def test_success_false_body_is_domain_block() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "Run tests to prove this branch"})

    with pytest.raises(DomainBlockedError, match="Run tests to prove"):
        _call(_api(handler), lambda api: api.commit_branch("demo", "feature/x", {"message": "wip"}))


def test_missing_error_text_uses_operation_fallback() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(TransportError, match="Failed to cancel job"):
        _call(_api(handler), lambda api: api.cancel_job("demo", "job-1"))


def test_connection_errors_are_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError, match="Failed to list jobs"):
        _call(_api(handler), lambda api: api.list_jobs("demo"))


def test_timeouts_are_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(TransportError, match="request timed out"):
        _call(_api(handler), lambda api: api.get_job("demo", "job-1"))


def test_branch_paths_are_quoted() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    _call(_api(handler), lambda api: api.record_test_proof("demo", "feature/login", {"jobIds": ["a"]}))

    assert seen[0].url.raw_path == b"/api/projects/demo/branches/feature%2Flogin/tests/proof"


def test_ui_command_calls() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/agent/ui/commands":
            return httpx.Response(200, json={"commands": [{"id": 1, "type": "navigate"}]})
        return httpx.Response(200, json={"success": True})

    async def scenario(api: HttpAutomationApi):
        commands = await api.fetch_ui_commands("demo", "default")
        await api.ack_ui_commands("demo", "default", [1, 3, 2])
        return commands

    commands = _call(_api(handler), scenario)

    assert commands == [{"id": 1, "type": "navigate"}]
    assert seen[0].url.params["projectId"] == "demo"
    ack = json.loads(seen[1].content)
    assert ack["upToId"] == 3
    assert ack["commandIds"] == [1, 3, 2]
