from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from lucid_automation.autofix import (
    AutoFixController,
    FailureKind,
    HaltReason,
    LoopState,
    RemediationRequest,
    RunOrigin,
    Verdict,
)
from lucid_automation.autofix.loop import MANUAL_FAILURE_MESSAGE, halt_message
from lucid_automation.jobs import Job, JobLogEntry, JobStatus, JobType
from lucid_automation.prompts import Prompt, PromptKind

MOUNTED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class Harness:
    def __init__(self, *, max_attempts: int | None = None, dispatch_error: Exception | None = None, **kwargs: Any) -> None:
        self.requests: list[RemediationRequest] = []
        self.prompts: list[Prompt] = []
        self.events: list[tuple[str, dict[str, Any]]] = []
        self._dispatch_error = dispatch_error
        self.controller = AutoFixController(
            dispatch=self._dispatch,
            notify=self.prompts.append,
            max_attempts=max_attempts,
            recorder=self,
            clock=lambda: MOUNTED,
            **kwargs,
        )
        self.session = self.controller.open_session("demo")
        self._counter = 0

    def _dispatch(self, request: RemediationRequest) -> None:
        if self._dispatch_error is not None:
            raise self._dispatch_error
        self.requests.append(request)

    def record_autofix_event(self, *, project_id: str, event_type: str, body: dict[str, Any]) -> None:
        self.events.append((event_type, dict(body)))

    def jobs(
        self,
        frontend_lines: list[str] | None,
        *,
        frontend_status: JobStatus = JobStatus.FAILED,
        backend_status: JobStatus = JobStatus.SUCCEEDED,
        created_at: datetime | None = None,
    ) -> dict[JobType, Job]:
        self._counter += 1
        stamp = created_at or MOUNTED + timedelta(minutes=self._counter)
        frontend = Job(
            id=f"fe-{self._counter}",
            type=JobType.FRONTEND_TEST,
            project_id="demo",
            status=frontend_status,
            created_at=stamp,
            logs=[JobLogEntry(message=line) for line in frontend_lines or []],
        )
        backend = Job(
            id=f"be-{self._counter}",
            type=JobType.BACKEND_TEST,
            project_id="demo",
            status=backend_status,
            created_at=stamp,
        )
        return {JobType.FRONTEND_TEST: frontend, JobType.BACKEND_TEST: backend}

    def automation_run(self, lines: list[str]):
        self.controller.mark_run_started(self.session, RunOrigin.AUTOMATION)
        return self.controller.evaluate(self.session, self.jobs(lines))


def test_repeated_fingerprint_halts_on_second_failure() -> None:
    harness = Harness()

    first = harness.automation_run(["FAIL src/App.test.tsx", "expected 1 to be 2"])
    second = harness.automation_run(["FAIL src/App.test.tsx", "expected 1 to be 2"])
    third = harness.automation_run(["FAIL src/App.test.tsx", "expected 1 to be 2"])

    assert first.verdict is Verdict.DISPATCHED
    assert second.verdict is Verdict.HALTED
    assert second.detail == HaltReason.REPEATED_FAILURE.value
    assert "same error is repeating" in second.prompt.message
    assert third.verdict is Verdict.IGNORED and third.detail == "halted"
    assert len(harness.requests) == 1
    assert harness.session.autofix.state is LoopState.HALTED
    assert harness.session.autofix.halt_reason is HaltReason.REPEATED_FAILURE


def test_identical_failing_ids_with_shifting_numbers_still_repeat() -> None:
    harness = Harness()

    harness.automation_run(["FAIL src/App.test.tsx (12 ms)", "at src/App.tsx:10:4"])
    outcome = harness.automation_run(["FAIL src/App.test.tsx (31 ms)", "at src/App.tsx:14:9"])

    assert outcome.verdict is Verdict.HALTED
    assert outcome.prompt.message == halt_message(HaltReason.REPEATED_FAILURE, 1)
    assert len(harness.requests) == 1


def test_max_attempts_caps_dispatches() -> None:
    harness = Harness(max_attempts=2)

    outcomes = [harness.automation_run([f"FAIL src/Case{index}.test.tsx"]) for index in range(4)]

    assert [outcome.verdict for outcome in outcomes[:3]] == [
        Verdict.DISPATCHED,
        Verdict.DISPATCHED,
        Verdict.HALTED,
    ]
    assert outcomes[2].detail == HaltReason.MAX_ATTEMPTS.value
    assert outcomes[2].prompt.message.startswith("Auto-fix tried 2 times")
    assert outcomes[3].verdict is Verdict.IGNORED
    assert len(harness.requests) == 2
    assert [request.attempt for request in harness.requests] == [1, 2]


def test_changing_failures_keep_dispatching_without_cap() -> None:
    harness = Harness()

    for index in range(5):
        assert harness.automation_run([f"FAIL src/Case{index}.test.tsx"]).verdict is Verdict.DISPATCHED

    assert harness.session.autofix.attempt == 5
    assert [event for event, _ in harness.events] == ["autofix_dispatch"] * 5


def test_user_run_failure_offers_fix_instead_of_dispatching() -> None:
    harness = Harness()
    harness.controller.mark_run_started(harness.session, RunOrigin.USER)

    outcome = harness.controller.evaluate(harness.session, harness.jobs(["FAIL src/App.test.tsx"]))

    assert outcome.verdict is Verdict.OFFERED
    assert outcome.prompt.kind is PromptKind.TESTS_FAILED
    assert outcome.prompt.message == MANUAL_FAILURE_MESSAGE
    assert outcome.prompt.confirm_text == "Fix with AI"
    assert outcome.prompt.metadata == {"jobIds": ["fe-1"]}
    assert harness.prompts == [outcome.prompt]
    assert harness.requests == []


def test_fix_with_ai_starts_user_session() -> None:
    harness = Harness()
    harness.controller.mark_run_started(harness.session, RunOrigin.USER)
    jobs = harness.jobs(["FAIL src/App.test.tsx"])
    harness.controller.evaluate(harness.session, jobs)

    outcome = harness.controller.request_fix(harness.session, jobs)

    assert outcome.verdict is Verdict.DISPATCHED
    assert outcome.request.origin == "user"
    assert harness.session.autofix.origin is RunOrigin.USER
    assert harness.session.autofix.state is LoopState.FIXING


def test_fix_with_ai_with_nothing_failing_is_ignored() -> None:
    harness = Harness()
    jobs = harness.jobs(None, frontend_status=JobStatus.SUCCEEDED)

    outcome = harness.controller.request_fix(harness.session, jobs)

    assert outcome.verdict is Verdict.IGNORED
    assert outcome.detail == "nothing-failing"


def test_non_final_jobs_wait() -> None:
    harness = Harness()

    outcome = harness.controller.evaluate(
        harness.session, harness.jobs(None, frontend_status=JobStatus.RUNNING)
    )

    assert outcome.verdict is Verdict.WAITING
    assert harness.session.observed_run is True
    assert harness.session.autofix.state is LoopState.AWAITING_RESULT


def test_results_from_before_mount_are_ignored() -> None:
    harness = Harness()
    jobs = harness.jobs(["FAIL src/App.test.tsx"], created_at=MOUNTED - timedelta(hours=1))

    outcome = harness.controller.evaluate(harness.session, jobs)

    assert outcome.verdict is Verdict.IGNORED
    assert outcome.detail == "historic"
    assert harness.prompts == []


def test_same_result_is_reacted_to_once() -> None:
    harness = Harness()
    harness.controller.mark_run_started(harness.session, RunOrigin.AUTOMATION)
    jobs = harness.jobs(["FAIL src/App.test.tsx"])

    first = harness.controller.evaluate(harness.session, jobs)
    second = harness.controller.evaluate(harness.session, jobs)

    assert first.verdict is Verdict.DISPATCHED
    assert second.verdict is Verdict.IGNORED and second.detail == "duplicate"
    assert len(harness.requests) == 1


def test_suppressed_and_cancelled_runs_are_silent() -> None:
    harness = Harness()
    harness.controller.mark_run_started(harness.session, RunOrigin.AUTOMATION)
    jobs = harness.jobs(["FAIL src/App.test.tsx"])
    harness.controller.suppress(harness.session, [jobs[JobType.FRONTEND_TEST].id])

    suppressed = harness.controller.evaluate(harness.session, jobs)
    cancelled = harness.controller.evaluate(
        harness.session, harness.jobs(None, frontend_status=JobStatus.CANCELLED)
    )

    assert suppressed.detail == "suppressed"
    assert cancelled.detail == "cancelled"
    assert harness.session.autofix.state is LoopState.IDLE
    assert harness.requests == [] and harness.prompts == []


def test_passing_run_resets_session_and_returns_intent() -> None:
    harness = Harness()
    harness.automation_run(["FAIL src/App.test.tsx"])
    harness.controller.mark_run_started(harness.session, RunOrigin.AUTOMATION, auto_commit=True)

    outcome = harness.controller.evaluate(
        harness.session, harness.jobs(None, frontend_status=JobStatus.SUCCEEDED)
    )

    assert outcome.verdict is Verdict.PASSED
    assert outcome.intent.auto_commit is True
    assert harness.session.autofix.attempt == 0
    assert harness.session.autofix.state is LoopState.IDLE


def test_user_halt_blocks_automation_until_user_run() -> None:
    harness = Harness()
    harness.automation_run(["FAIL src/A.test.tsx"])

    halted = harness.controller.halt(harness.session)
    blocked = harness.automation_run(["FAIL src/B.test.tsx"])

    assert halted.verdict is Verdict.HALTED
    assert halted.prompt.kind is PromptKind.AUTOFIX_HALTED
    assert halted.prompt.metadata == {"reason": "user", "attempts": 1}
    assert blocked.detail == "halted"
    assert harness.events[-1][0] == "autofix_halt"

    harness.controller.mark_run_started(harness.session, RunOrigin.USER)
    assert harness.session.autofix.state is LoopState.AWAITING_RESULT
    assert harness.session.autofix.halt_reason is None


def test_dispatch_failure_reports_and_resets() -> None:
    harness = Harness(dispatch_error=RuntimeError("agent offline"))

    outcome = harness.automation_run(["FAIL src/App.test.tsx"])

    assert outcome.verdict is Verdict.DISPATCH_FAILED
    assert outcome.prompt.kind is PromptKind.AUTOFIX_ERROR
    assert "agent offline" in outcome.prompt.message
    assert harness.session.autofix.attempt == 0
    assert harness.session.autofix.state is LoopState.IDLE


def test_classifier_errors_count_as_failures() -> None:
    def broken(job: Job) -> FailureKind:
        raise ValueError("unparseable")

    harness = Harness(classifier=broken)

    outcome = harness.automation_run([])

    assert outcome.verdict is Verdict.DISPATCHED
    assert len(outcome.request.failure_context["jobs"]) == 2


def test_sink_and_recorder_errors_do_not_escape() -> None:
    def failing_sink(prompt: Prompt) -> None:
        raise RuntimeError("ui gone")

    class FailingRecorder:
        def record_autofix_event(self, **kwargs: Any) -> None:
            raise RuntimeError("disk full")

    requests: list[RemediationRequest] = []
    controller = AutoFixController(
        dispatch=requests.append, notify=failing_sink, recorder=FailingRecorder(), clock=lambda: MOUNTED
    )
    session = controller.open_session("demo")

    outcome = controller.halt(session, HaltReason.USER)

    assert outcome.verdict is Verdict.HALTED
