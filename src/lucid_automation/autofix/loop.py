"""Bounded auto-fix control loop.

The loop watches the tracked test suites of the focused project. When a
run that automation started finishes with failures it dispatches one
remediation request to the external fixing agent and waits for the next
run. It halts when the attempt budget is spent or when a failure's
fingerprint matches the one recorded on the previous attempt, and it
never raises: every outcome is a state transition plus, where the user
needs to know, a prompt.

All per-project state lives in a ``ProjectSession`` that the caller
creates on project focus and drops on focus change; the controller holds
only its strategies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

from ..jobs.models import TEST_JOB_TYPES, Job, JobStatus, JobType
from ..prompts import Prompt, PromptKind, PromptSink
from .fingerprint import (
    FailureClassifier,
    FailureFingerprint,
    FailureKind,
    build_fingerprint,
    classify_job,
)
from .plan import FailingSuite, RemediationRequest, build_fix_plan

logger = logging.getLogger(__name__)

MANUAL_FAILURE_MESSAGE = (
    "One or more test suites failed. Want the AI assistant to help you fix them?"
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class LoopState(str, Enum):
    IDLE = "idle"
    AWAITING_RESULT = "awaiting-result"
    FIXING = "fixing"
    HALTED = "halted"


class RunOrigin(str, Enum):
    USER = "user"
    AUTOMATION = "automation"


class HaltReason(str, Enum):
    MAX_ATTEMPTS = "max-attempts"
    REPEATED_FAILURE = "repeated-failure"
    USER = "user"


class Verdict(str, Enum):
    WAITING = "waiting"
    IGNORED = "ignored"
    PASSED = "passed"
    OFFERED = "offered"
    DISPATCHED = "dispatched"
    HALTED = "halted"
    DISPATCH_FAILED = "dispatch-failed"


class AutoFixRecorder(Protocol):
    def record_autofix_event(
        self, *, project_id: str, event_type: str, body: Mapping[str, Any]
    ) -> Any:
        ...


@dataclass(slots=True)
class RunIntent:
    source: RunOrigin
    auto_commit: bool = False
    return_to_commits: bool = False


@dataclass(slots=True)
class AutoFixSession:
    active: bool = False
    origin: RunOrigin | None = None
    attempt: int = 0
    max_attempts: int | None = None
    last_fingerprint: FailureFingerprint | None = None
    attempted_coverage_targets: list[str] = field(default_factory=list)
    state: LoopState = LoopState.IDLE
    halt_reason: HaltReason | None = None

    def reset(self) -> None:
        self.active = False
        self.origin = None
        self.attempt = 0
        self.last_fingerprint = None
        self.attempted_coverage_targets = []
        self.state = LoopState.IDLE
        self.halt_reason = None


@dataclass(slots=True)
class ProjectSession:
    """Mutable loop state for one focused project."""

    project_id: str
    mounted_at: datetime
    autofix: AutoFixSession
    intent: RunIntent | None = None
    observed_run: bool = False
    suppressed_job_ids: set[str] = field(default_factory=set)
    last_result_key: str | None = None


@dataclass(frozen=True, slots=True)
class LoopOutcome:
    verdict: Verdict
    detail: str | None = None
    request: RemediationRequest | None = None
    prompt: Prompt | None = None
    intent: RunIntent | None = None


def halt_message(reason: HaltReason, attempts: int) -> str:
    if reason is HaltReason.MAX_ATTEMPTS:
        return (
            f"Auto-fix tried {attempts} times but tests are still failing. "
            "Review the logs and try a manual fix."
        )
    if reason is HaltReason.REPEATED_FAILURE:
        plural = "attempt" if attempts == 1 else "attempts"
        return (
            f"Auto-fix stopped after {attempts} {plural} because the same error is repeating. "
            "Review the logs and try a manual fix."
        )
    return "Auto-fix was stopped. Run the tests again or choose Fix with AI to retry."


class AutoFixController:
    """Transition function over ``ProjectSession`` with injected strategies."""

    def __init__(
        self,
        *,
        dispatch: Callable[[RemediationRequest], Any],
        notify: PromptSink | None = None,
        max_attempts: int | None = None,
        classifier: FailureClassifier = classify_job,
        tracked_types: Sequence[JobType] = TEST_JOB_TYPES,
        recorder: AutoFixRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dispatch = dispatch
        self._notify = notify
        self._max_attempts = max_attempts
        self._classifier = classifier
        self._tracked_types = tuple(tracked_types)
        self._recorder = recorder
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def tracked_types(self) -> tuple[JobType, ...]:
        return self._tracked_types

    def open_session(self, project_id: str) -> ProjectSession:
        return ProjectSession(
            project_id=project_id,
            mounted_at=self._clock(),
            autofix=AutoFixSession(max_attempts=self._max_attempts),
        )

    def mark_run_started(
        self,
        session: ProjectSession,
        source: RunOrigin,
        *,
        auto_commit: bool = False,
        return_to_commits: bool = False,
    ) -> None:
        session.intent = RunIntent(
            source=source, auto_commit=auto_commit, return_to_commits=return_to_commits
        )
        session.observed_run = True
        autofix = session.autofix
        if source is RunOrigin.USER:
            autofix.reset()
            autofix.state = LoopState.AWAITING_RESULT
        elif autofix.state is not LoopState.HALTED:
            autofix.state = LoopState.AWAITING_RESULT

    def suppress(self, session: ProjectSession, job_ids: Iterable[str]) -> None:
        session.suppressed_job_ids.update(job_id for job_id in job_ids if job_id)

    def halt(self, session: ProjectSession, reason: HaltReason = HaltReason.USER) -> LoopOutcome:
        autofix = session.autofix
        autofix.active = False
        autofix.state = LoopState.HALTED
        autofix.halt_reason = reason
        message = halt_message(reason, autofix.attempt)
        prompt = Prompt(
            kind=PromptKind.AUTOFIX_HALTED,
            title="Auto-fix halted",
            message=message,
            variant="danger",
            project_id=session.project_id,
            metadata={"reason": reason.value, "attempts": autofix.attempt},
        )
        logger.warning(
            "Auto-fix halted",
            extra={
                "project_id": session.project_id,
                "reason": reason.value,
                "attempts": autofix.attempt,
            },
        )
        self._record(session, "autofix_halt", {"reason": reason.value, "attempts": autofix.attempt, "message": message})
        self._emit(prompt)
        return LoopOutcome(Verdict.HALTED, detail=reason.value, prompt=prompt)

    def request_fix(
        self, session: ProjectSession, jobs: Mapping[JobType, Job | None]
    ) -> LoopOutcome:
        """User asked for AI help: start a fresh session with origin=user."""

        suites = self._failing_suites(jobs)
        if not suites:
            return LoopOutcome(Verdict.IGNORED, detail="nothing-failing")
        autofix = session.autofix
        autofix.reset()
        autofix.active = True
        autofix.origin = RunOrigin.USER
        return self._dispatch_attempt(session, suites)

    def evaluate(
        self, session: ProjectSession, jobs: Mapping[JobType, Job | None]
    ) -> LoopOutcome:
        """React once to the latest jobs of the tracked types."""

        present = [job for kind in self._tracked_types if (job := jobs.get(kind)) is not None]
        if not present:
            return LoopOutcome(Verdict.WAITING)

        if any(not job.is_final for job in present):
            session.observed_run = True
            if session.autofix.state is LoopState.IDLE:
                session.autofix.state = LoopState.AWAITING_RESULT
            return LoopOutcome(Verdict.WAITING)

        if not session.observed_run and all(
            (job.created_at or _EPOCH) < session.mounted_at for job in present
        ):
            return LoopOutcome(Verdict.IGNORED, detail="historic")

        key = "|".join(sorted(job.result_key for job in present))
        if key == session.last_result_key:
            return LoopOutcome(Verdict.IGNORED, detail="duplicate")
        session.last_result_key = key

        if any(job.id in session.suppressed_job_ids for job in present):
            return LoopOutcome(Verdict.IGNORED, detail="suppressed")

        if any(job.status is JobStatus.CANCELLED for job in present):
            if session.autofix.state is not LoopState.HALTED:
                session.autofix.state = LoopState.IDLE
            return LoopOutcome(Verdict.IGNORED, detail="cancelled")

        intent = session.intent
        suites = self._failing_suites(jobs)
        if not suites:
            session.autofix.reset()
            logger.info("Tracked test suites passed", extra={"project_id": session.project_id})
            return LoopOutcome(Verdict.PASSED, intent=intent)

        if session.autofix.state is LoopState.HALTED:
            return LoopOutcome(Verdict.IGNORED, detail="halted")

        if intent is not None and intent.source is RunOrigin.AUTOMATION:
            return self._attempt(session, suites)

        session.autofix.state = LoopState.IDLE
        prompt = Prompt(
            kind=PromptKind.TESTS_FAILED,
            title="Tests failed",
            message=MANUAL_FAILURE_MESSAGE,
            variant="danger",
            confirm_text="Fix with AI",
            cancel_text="Dismiss",
            project_id=session.project_id,
            metadata={"jobIds": [suite.job.id for suite in suites]},
        )
        self._emit(prompt)
        return LoopOutcome(Verdict.OFFERED, prompt=prompt)

    def _classify(self, job: Job) -> FailureKind:
        try:
            return self._classifier(job)
        except Exception:
            logger.exception("Failure classifier raised", extra={"job_id": job.id})
            return FailureKind.TEST_FAILURE

    def _failing_suites(self, jobs: Mapping[JobType, Job | None]) -> list[FailingSuite]:
        suites: list[FailingSuite] = []
        for kind in self._tracked_types:
            job = jobs.get(kind)
            if job is None or not job.is_final or job.status is JobStatus.CANCELLED:
                continue
            failure = self._classify(job)
            if failure is not FailureKind.PASSED:
                suites.append(
                    FailingSuite(label=kind.label, kind=kind.scope.value, job=job, failure=failure)
                )
        return suites

    def _attempt(self, session: ProjectSession, suites: list[FailingSuite]) -> LoopOutcome:
        autofix = session.autofix
        if not autofix.active:
            autofix.reset()
            autofix.active = True
            autofix.origin = RunOrigin.AUTOMATION

        if autofix.max_attempts is not None and autofix.attempt >= autofix.max_attempts:
            return self.halt(session, HaltReason.MAX_ATTEMPTS)

        fingerprint = build_fingerprint([(suite.job, suite.failure) for suite in suites])
        if autofix.last_fingerprint is not None and autofix.last_fingerprint == fingerprint:
            return self.halt(session, HaltReason.REPEATED_FAILURE)

        return self._dispatch_attempt(session, suites, fingerprint)

    def _dispatch_attempt(
        self,
        session: ProjectSession,
        suites: list[FailingSuite],
        fingerprint: FailureFingerprint | None = None,
    ) -> LoopOutcome:
        autofix = session.autofix
        fingerprint = fingerprint or build_fingerprint(
            [(suite.job, suite.failure) for suite in suites]
        )
        autofix.attempt += 1
        autofix.last_fingerprint = fingerprint
        autofix.state = LoopState.FIXING

        request = build_fix_plan(
            suites,
            origin=(autofix.origin or RunOrigin.AUTOMATION).value,
            attempt=autofix.attempt,
            attempted_coverage_targets=autofix.attempted_coverage_targets,
            fingerprint=fingerprint.digest,
        )
        autofix.attempted_coverage_targets.extend(request.coverage_targets)

        try:
            self._dispatch(request)
        except Exception as exc:
            logger.exception("Remediation dispatch failed", extra={"project_id": session.project_id})
            autofix.reset()
            prompt = Prompt(
                kind=PromptKind.AUTOFIX_ERROR,
                title="Auto-fix unavailable",
                message=f"Could not hand the failing tests to the AI assistant: {exc}",
                variant="danger",
                project_id=session.project_id,
            )
            self._emit(prompt)
            return LoopOutcome(Verdict.DISPATCH_FAILED, detail=str(exc), prompt=prompt)

        logger.info(
            "Dispatched auto-fix request",
            extra={
                "project_id": session.project_id,
                "attempt": autofix.attempt,
                "origin": request.origin,
            },
        )
        self._record(
            session,
            "autofix_dispatch",
            {"attempt": autofix.attempt, "origin": request.origin, "fingerprint": request.fingerprint},
        )
        return LoopOutcome(Verdict.DISPATCHED, request=request)

    def _emit(self, prompt: Prompt) -> None:
        if self._notify is None:
            return
        try:
            self._notify(prompt)
        except Exception:
            logger.exception("Prompt sink raised", extra={"prompt_kind": prompt.kind.value})

    def _record(self, session: ProjectSession, event_type: str, body: dict[str, Any]) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder.record_autofix_event(
                project_id=session.project_id, event_type=event_type, body=body
            )
        except Exception:
            logger.exception("Failed to record auto-fix event", extra={"event_type": event_type})


__all__ = [
    "AutoFixController",
    "AutoFixRecorder",
    "AutoFixSession",
    "HaltReason",
    "LoopOutcome",
    "LoopState",
    "MANUAL_FAILURE_MESSAGE",
    "ProjectSession",
    "RunIntent",
    "RunOrigin",
    "Verdict",
    "halt_message",
]
