from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from lucid_automation.jobs import (
    AutomationApiError,
    Job,
    JobLifecycleManager,
    JobStatus,
    JobType,
    RequestValidationError,
    SkipResult,
    StagedFile,
    TransportError,
    should_run_test,
)

BASE = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _job_body(job_id: str, status: str, *, job_type: str = "frontend:test", **extra: Any) -> dict[str, Any]:
    body = {
        "id": job_id,
        "type": job_type,
        "projectId": "demo",
        "status": status,
        "createdAt": BASE.isoformat(),
    }
    body.update(extra)
    return body


def _job(job_id: str, status: JobStatus, *, completed_at: datetime | None = None, created_at=BASE) -> Job:
    return Job(
        id=job_id,
        type=JobType.FRONTEND_TEST,
        project_id="demo",
        status=status,
        created_at=created_at,
        completed_at=completed_at,
    )


class StubJobApi:
    """Scripted job endpoints: each get_job call pops the next answer for that id."""

    def __init__(self) -> None:
        self.started: list[tuple[str, str, dict[str, Any] | None]] = []
        self.cancelled: list[str] = []
        self.get_calls: dict[str, int] = {}
        self.start_response: dict[str, Any] | Exception = {}
        self.get_responses: dict[str, list[dict[str, Any] | Exception]] = {}
        self.cancel_response: dict[str, Any] | Exception = {}
        self.list_response: dict[str, Any] = {"jobs": []}

    async def start_job(self, project_id, job_type, payload=None):
        self.started.append((project_id, job_type, payload))
        if isinstance(self.start_response, Exception):
            raise self.start_response
        return self.start_response

    async def get_job(self, project_id, job_id):
        self.get_calls[job_id] = self.get_calls.get(job_id, 0) + 1
        queue = self.get_responses.get(job_id) or []
        answer = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else TransportError("gone"))
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def cancel_job(self, project_id, job_id):
        self.cancelled.append(job_id)
        if isinstance(self.cancel_response, Exception):
            raise self.cancel_response
        return self.cancel_response

    async def list_jobs(self, project_id):
        return self.list_response


def test_should_run_test_when_no_prior_run() -> None:
    assert should_run_test(JobType.FRONTEND_TEST, [], []) is True


def test_should_run_test_false_until_staged_file_advances() -> None:
    completed = BASE + timedelta(minutes=5)
    jobs = [_job("job-1", JobStatus.SUCCEEDED, completed_at=completed)]
    staged = [StagedFile(path="src/App.tsx", timestamp=BASE + timedelta(minutes=1))]

    for _ in range(3):
        assert should_run_test("frontend:test", jobs, staged) is False

    staged.append(StagedFile(path="src/App.tsx", timestamp=completed + timedelta(seconds=1)))
    assert should_run_test("frontend:test", jobs, staged) is True


def test_should_run_test_true_after_failure_or_unknown_timestamp() -> None:
    completed = BASE + timedelta(minutes=5)
    failed = [_job("job-1", JobStatus.FAILED, completed_at=completed)]
    assert should_run_test(JobType.FRONTEND_TEST, failed, []) is True

    succeeded = [_job("job-2", JobStatus.SUCCEEDED, completed_at=completed)]
    assert should_run_test(JobType.FRONTEND_TEST, succeeded, [StagedFile(path="a.ts")]) is True


def test_should_run_test_uses_latest_run_of_type() -> None:
    older = _job("old", JobStatus.SUCCEEDED, completed_at=BASE, created_at=BASE - timedelta(hours=1))
    newer = _job("new", JobStatus.FAILED, completed_at=BASE + timedelta(hours=1), created_at=BASE)
    assert should_run_test(JobType.FRONTEND_TEST, [older, newer], []) is True


def test_start_job_skips_unchanged_test_without_calling_server() -> None:
    api = StubJobApi()
    api.start_response = {
        "success": True,
        "job": _job_body("job-1", "succeeded", completedAt=(BASE + timedelta(minutes=5)).isoformat()),
    }
    manager = JobLifecycleManager(api, poll_interval=0.01)
    staged = [StagedFile(path="src/App.tsx", timestamp=BASE)]

    async def scenario():
        first = await manager.start_job("frontend:test", project_id="demo", staged_files=staged)
        second = await manager.start_job("frontend:test", project_id="demo", staged_files=staged)
        return first, second

    first, second = asyncio.run(scenario())

    assert isinstance(first, Job)
    assert isinstance(second, SkipResult)
    assert second.reason == "unchanged-since-last-success"
    assert second.indicator == "job-1"
    assert len(api.started) == 1
    assert len(manager.jobs("demo")) == 1


def test_start_job_maps_server_skip() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "skipped": True, "reason": "css-only-branch", "branch": "feature/x"}
    manager = JobLifecycleManager(api)

    result = asyncio.run(manager.start_job(JobType.BACKEND_TEST, project_id="demo"))

    assert result == SkipResult(reason="css-only-branch", branch="feature/x")
    assert manager.jobs("demo") == []


def test_start_job_requires_project() -> None:
    manager = JobLifecycleManager(StubJobApi())

    with pytest.raises(RequestValidationError, match="Select a project"):
        asyncio.run(manager.start_job("frontend:test", project_id=""))


def test_start_job_without_job_body_fails() -> None:
    api = StubJobApi()
    api.start_response = {"success": True}
    manager = JobLifecycleManager(api)

    with pytest.raises(AutomationApiError, match="Failed to start automation job"):
        asyncio.run(manager.start_job("frontend:test", project_id="demo"))


def test_start_job_invalid_job_body_is_validation_error() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": {"id": "", "type": "frontend:test", "projectId": "demo", "status": "pending"}}
    manager = JobLifecycleManager(api)

    with pytest.raises(RequestValidationError):
        asyncio.run(manager.start_job("frontend:test", project_id="demo"))


def test_polls_until_terminal_and_notifies_listeners() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "pending")}
    api.get_responses["job-1"] = [
        {"job": _job_body("job-1", "running")},
        {"job": _job_body("job-1", "succeeded", exitCode=0)},
    ]
    seen: list[str] = []
    manager = JobLifecycleManager(api, poll_interval=0.01, listeners=[lambda job: seen.append(job.status.value)])

    async def scenario():
        job = await manager.start_job("frontend:test", project_id="demo")
        assert manager.is_polling("demo", job.id)
        return await manager.wait_for_job("demo", job.id)

    final = asyncio.run(scenario())

    assert final is not None and final.status is JobStatus.SUCCEEDED
    assert seen == ["pending", "running", "succeeded"]
    assert not manager.is_polling("demo", "job-1")
    assert api.get_calls["job-1"] == 2


def test_terminal_status_is_never_overwritten() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "failed")}
    api.list_response = {"jobs": [_job_body("job-1", "running")]}
    manager = JobLifecycleManager(api, poll_interval=0.01)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        await manager.refresh_jobs("demo")

    asyncio.run(scenario())

    stored = manager.get("demo", "job-1")
    assert stored is not None and stored.status is JobStatus.FAILED
    assert not manager.is_polling("demo", "job-1")


def test_cancel_stops_polling_even_when_server_fails() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "running")}
    api.get_responses["job-1"] = [{"job": _job_body("job-1", "running")}]
    api.cancel_response = TransportError("connection refused")
    manager = JobLifecycleManager(api, poll_interval=0.01)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        await asyncio.sleep(0.03)
        with pytest.raises(TransportError):
            await manager.cancel_job("job-1", project_id="demo")
        calls = api.get_calls.get("job-1", 0)
        await asyncio.sleep(0.05)
        return calls

    calls_at_cancel = asyncio.run(scenario())

    assert not manager.is_polling("demo", "job-1")
    assert api.get_calls.get("job-1", 0) <= calls_at_cancel + 1
    assert api.cancelled == ["job-1"]


def test_cancel_stores_server_answer() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "running")}
    api.get_responses["job-1"] = [{"job": _job_body("job-1", "running")}]
    api.cancel_response = {"success": True, "job": _job_body("job-1", "cancelled")}
    manager = JobLifecycleManager(api, poll_interval=0.05)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        return await manager.cancel_job("job-1", project_id="demo")

    cancelled = asyncio.run(scenario())

    assert cancelled is not None and cancelled.status is JobStatus.CANCELLED


def test_transport_failures_are_retried_then_recorded() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "running")}
    api.get_responses["job-1"] = [TransportError("timeout")]
    manager = JobLifecycleManager(api, poll_interval=0.005, transport_retries=2)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        await manager.wait_for_job("demo", "job-1")

    asyncio.run(scenario())

    assert api.get_calls["job-1"] == 3
    assert manager.poll_errors == {"job-1": "timeout"}
    assert manager.get("demo", "job-1").status is JobStatus.RUNNING


def test_transient_transport_failure_recovers() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "running")}
    api.get_responses["job-1"] = [
        TransportError("blip"),
        {"job": _job_body("job-1", "succeeded")},
    ]
    manager = JobLifecycleManager(api, poll_interval=0.005, transport_retries=1)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        return await manager.wait_for_job("demo", "job-1")

    final = asyncio.run(scenario())

    assert final.status is JobStatus.SUCCEEDED
    assert manager.poll_errors == {}


def test_validation_error_stops_polling_without_retry() -> None:
    api = StubJobApi()
    api.start_response = {"success": True, "job": _job_body("job-1", "running")}
    api.get_responses["job-1"] = [RequestValidationError("Job not found", status_code=404)]
    manager = JobLifecycleManager(api, poll_interval=0.005, transport_retries=5)

    async def scenario():
        await manager.start_job("frontend:test", project_id="demo")
        await manager.wait_for_job("demo", "job-1")

    asyncio.run(scenario())

    assert api.get_calls["job-1"] == 1
    assert manager.poll_errors["job-1"] == "Job not found"


def test_latest_returns_newest_of_type() -> None:
    api = StubJobApi()
    api.list_response = {
        "jobs": [
            _job_body("old", "succeeded"),
            _job_body("new", "failed", createdAt=(BASE + timedelta(minutes=1)).isoformat()),
            _job_body("lint", "succeeded", job_type="frontend:lint", createdAt=(BASE + timedelta(minutes=2)).isoformat()),
        ]
    }
    manager = JobLifecycleManager(api)

    asyncio.run(manager.refresh_jobs("demo"))

    assert manager.latest("demo", JobType.FRONTEND_TEST).id == "new"
    assert [job.id for job in manager.jobs("demo")] == ["lint", "new", "old"]


def test_client_logs_are_trimmed() -> None:
    api = StubJobApi()
    logs = [{"stream": "stdout", "message": f"line {index}"} for index in range(10)]
    api.start_response = {"success": True, "job": _job_body("job-1", "succeeded", logs=logs)}
    manager = JobLifecycleManager(api, log_limit=3)

    job = asyncio.run(manager.start_job("frontend:lint", project_id="demo"))

    assert [entry.message for entry in job.logs] == ["line 7", "line 8", "line 9"]
