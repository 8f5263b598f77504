from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from lucid_automation.autofix import AutoFixController, RemediationRequest, RunOrigin, Verdict
from lucid_automation.coordinator import RunCoordinator
from lucid_automation.gate import BranchState, CommitGate, GateFlow
from lucid_automation.jobs import AutomationApiError, JobLifecycleManager, SkipResult
from lucid_automation.prompts import Prompt, PromptKind


class ScriptedJobApi:
    """Answers start requests with jobs in a preset status per job type."""

    def __init__(self, statuses: dict[str, str], logs: dict[str, list[str]] | None = None) -> None:
        self.statuses = statuses
        self.logs = logs or {}
        self.skip = False
        self.started: list[tuple[str, dict[str, Any]]] = []
        self.cancelled: list[str] = []
        self._bodies: dict[str, dict[str, Any]] = {}
        self._counter = 0

    async def start_job(self, project_id, job_type, payload=None):
        self.started.append((job_type, dict(payload or {})))
        if self.skip:
            return {"success": True, "skipped": True, "reason": "css-only-branch"}
        self._counter += 1
        body = {
            "id": f"{job_type}-{self._counter}",
            "type": job_type,
            "projectId": project_id,
            "status": self.statuses[job_type],
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "logs": [{"message": line} for line in self.logs.get(job_type, [])],
        }
        self._bodies[body["id"]] = body
        return {"success": True, "job": body}

    async def get_job(self, project_id, job_id):
        return {"success": True, "job": self._bodies[job_id]}

    async def cancel_job(self, project_id, job_id):
        self.cancelled.append(job_id)
        body = {**self._bodies[job_id], "status": "cancelled"}
        self._bodies[job_id] = body
        return {"success": True, "job": body}

    async def list_jobs(self, project_id):
        return {"success": True, "jobs": list(self._bodies.values())}


class StubBranchApi:
    def __init__(self) -> None:
        self.commits: list[str] = []
        self.proofs: list[dict[str, Any]] = []

    async def commit_branch(self, project_id, branch, payload=None):
        self.commits.append(branch)
        return {"success": True}

    async def record_test_proof(self, project_id, branch, payload):
        self.proofs.append(dict(payload))
        return {"success": True}


class Rig:
    def __init__(self, api: ScriptedJobApi, *, branch: BranchState | None = None) -> None:
        self.api = api
        self.branch_api = StubBranchApi()
        self.requests: list[RemediationRequest] = []
        self.prompts: list[Prompt] = []
        self.manager = JobLifecycleManager(api, poll_interval=30)
        self.controller = AutoFixController(dispatch=self.requests.append, notify=self.prompts.append)
        self.gate = CommitGate(self.branch_api, notify=self.prompts.append)

        async def branch_state(project_id: str) -> BranchState | None:
            return branch

        self.coordinator = RunCoordinator(
            self.manager,
            self.controller,
            self.gate,
            branch_state=branch_state,
            commit_message=lambda project_id: f"Automated commit for {project_id}",
        )


FAILING = {"frontend:test": "failed", "backend:test": "succeeded"}
PASSING = {"frontend:test": "succeeded", "backend:test": "succeeded"}
FEATURE = BranchState(name="feature/login", staged_files=["src/Login.tsx"])


def test_requires_focused_project() -> None:
    rig = Rig(ScriptedJobApi(PASSING))

    with pytest.raises(AutomationApiError, match="Select a project"):
        asyncio.run(rig.coordinator.run_tests())


def test_focus_keeps_session_for_same_project() -> None:
    rig = Rig(ScriptedJobApi(PASSING))

    first = rig.coordinator.focus("demo")
    again = rig.coordinator.focus("demo")
    other = rig.coordinator.focus("shop")

    assert first is again
    assert other is not first
    assert other.project_id == "shop"


def test_passing_automation_run_auto_commits() -> None:
    rig = Rig(ScriptedJobApi(PASSING), branch=FEATURE)
    rig.coordinator.focus("demo")

    async def scenario():
        await rig.coordinator.run_tests(
            source=RunOrigin.AUTOMATION, auto_commit=True, branch_name="feature/login"
        )
        await rig.coordinator.drain()

    asyncio.run(scenario())

    result = rig.coordinator.last_result
    assert result.loop.verdict is Verdict.PASSED
    assert result.gate.flow is GateFlow.AUTO_COMMIT
    assert rig.branch_api.commits == ["feature/login"]
    assert rig.branch_api.proofs[0]["jobIds"] == ["frontend:test-1", "backend:test-2"]
    assert rig.api.started[0] == ("frontend:test", {"branchName": "feature/login"})


def test_failing_automation_runs_dispatch_then_halt_on_repeat() -> None:
    api = ScriptedJobApi(FAILING, logs={"frontend:test": ["FAIL src/Login.test.tsx", "expected true"]})
    rig = Rig(api)
    rig.coordinator.focus("demo")

    async def scenario():
        verdicts = []
        for _ in range(2):
            await rig.coordinator.run_tests(source=RunOrigin.AUTOMATION)
            await rig.coordinator.drain()
            verdicts.append(rig.coordinator.last_result.loop.verdict)
        return verdicts

    verdicts = asyncio.run(scenario())

    assert verdicts == [Verdict.DISPATCHED, Verdict.HALTED]
    assert len(rig.requests) == 1
    assert rig.prompts[-1].kind is PromptKind.AUTOFIX_HALTED


def test_user_run_offers_fix_and_fix_with_ai_dispatches() -> None:
    rig = Rig(ScriptedJobApi(FAILING, logs={"frontend:test": ["FAIL src/Login.test.tsx"]}))
    rig.coordinator.focus("demo")

    async def scenario():
        await rig.coordinator.run_tests(source=RunOrigin.USER)
        await rig.coordinator.drain()
        offered = rig.coordinator.last_result.loop
        fixed = await rig.coordinator.fix_with_ai()
        return offered, fixed

    offered, fixed = asyncio.run(scenario())

    assert offered.verdict is Verdict.OFFERED
    assert rig.prompts[0].kind is PromptKind.TESTS_FAILED
    assert fixed.verdict is Verdict.DISPATCHED
    assert rig.requests[0].origin == "user"
    assert rig.requests[0].child_prompts == ["Fix failing test: src/Login.test.tsx"]


def test_cancelled_runs_are_suppressed() -> None:
    rig = Rig(ScriptedJobApi({"frontend:test": "running", "backend:test": "running"}))
    rig.coordinator.focus("demo")

    async def scenario():
        await rig.coordinator.run_tests(source=RunOrigin.AUTOMATION)
        cancelled = await rig.coordinator.cancel_active_runs()
        await rig.coordinator.drain()
        await rig.manager.aclose()
        return cancelled

    cancelled = asyncio.run(scenario())

    assert cancelled == ["frontend:test-1", "backend:test-2"]
    assert sorted(rig.api.cancelled) == ["backend:test-2", "frontend:test-1"]
    assert rig.coordinator.last_result.loop.verdict is Verdict.IGNORED
    assert rig.prompts == [] and rig.requests == []


def test_fully_skipped_run_still_evaluates() -> None:
    api = ScriptedJobApi(PASSING)
    api.skip = True
    rig = Rig(api)
    rig.coordinator.focus("demo")

    async def scenario():
        results = await rig.coordinator.run_tests(source=RunOrigin.AUTOMATION, staged_files=[])
        await rig.coordinator.drain()
        return results

    results = asyncio.run(scenario())

    assert all(isinstance(result, SkipResult) for result in results.values())
    assert rig.coordinator.last_result.loop.verdict is Verdict.WAITING
    assert rig.api.started[0][1] == {"stagedPaths": []}


def test_other_project_jobs_do_not_trigger_evaluation() -> None:
    rig = Rig(ScriptedJobApi(FAILING))
    rig.coordinator.focus("demo")

    async def scenario():
        await rig.manager.start_job("frontend:test", project_id="shop")
        await rig.coordinator.drain()

    asyncio.run(scenario())

    assert rig.coordinator.last_result is None
