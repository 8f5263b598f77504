"""Remediation requests handed to the external fixing agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from ..jobs.models import Job
from ..processes.utils import strip_ansi
from .fingerprint import FailureKind, extract_failing_test_ids

FIX_PARENT_PROMPT = "Fix failing tests"
FALLBACK_CHILD_PROMPT = "Investigate which tests are failing and fix them"
MAX_LOG_LINES = 200
MAX_LOG_CHARS = 20000
TRUNCATION_MARKER = "/* ...logs truncated... */"
REMEDIATION_EVENT = "autofix-tests"


@dataclass(frozen=True, slots=True)
class FailingSuite:
    label: str
    kind: str
    job: Job
    failure: FailureKind = FailureKind.TEST_FAILURE


def collect_recent_log_lines(job: Job) -> tuple[list[str], bool]:
    """Newest log lines within the line and character budgets, plus a truncation flag."""

    recent = job.logs[-MAX_LOG_LINES:]
    truncated = len(job.logs) > len(recent)
    remaining = MAX_LOG_CHARS
    lines: list[str] = []

    for entry in recent:
        stamp = f"[{entry.timestamp.isoformat()}] " if entry.timestamp else ""
        combined = f"{stamp}{strip_ansi(entry.message or '').rstrip()}".rstrip()
        if not combined:
            continue
        cost = len(combined) + 1
        if cost > remaining:
            truncated = True
            break
        lines.append(combined)
        remaining -= cost
        if remaining <= 0:
            truncated = True
            break

    if truncated:
        lines.append(TRUNCATION_MARKER)
    return lines, truncated


def _duration(job: Job) -> str | None:
    if job.started_at is None:
        return None
    end = job.completed_at or datetime.now(timezone.utc)
    return f"{(end - job.started_at).total_seconds():.1f}s"


def build_job_failure_context(suite: FailingSuite) -> dict[str, Any]:
    job = suite.job
    lines, truncated = collect_recent_log_lines(job)
    error = (job.error or "").strip() or ((job.summary.error or "").strip() if job.summary else "")
    coverage = job.coverage
    return {
        "label": suite.label,
        "kind": suite.kind,
        "type": job.type.tag,
        "failure": suite.failure.value,
        "jobId": job.id,
        "status": job.status.value,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "duration": _duration(job),
        "command": job.command,
        "args": [arg for arg in job.args if arg.strip()],
        "cwd": job.cwd,
        "error": error or None,
        "coverage": coverage.model_dump(mode="json", by_alias=True) if coverage else None,
        "testFailures": extract_failing_test_ids(job),
        "recentLogs": lines,
        "logsTruncated": truncated,
        "totalLogEntries": len(job.logs),
    }


def build_failure_context(
    suites: Sequence[FailingSuite],
    *,
    clock: Callable[[], datetime] | None = None,
) -> dict[str, Any] | None:
    if not suites:
        return None
    now = (clock or (lambda: datetime.now(timezone.utc)))()
    return {
        "generatedAt": now.isoformat(),
        "jobs": [build_job_failure_context(suite) for suite in suites],
    }


@dataclass(slots=True)
class RemediationRequest:
    """A single outward request asking the fixing agent to repair failing suites."""

    prompt: str
    child_prompts: list[str]
    failure_context: dict[str, Any] | None
    origin: str
    attempt: int
    coverage_targets: list[str] = field(default_factory=list)
    attempted_coverage_targets: list[str] = field(default_factory=list)
    fingerprint: str | None = None

    def to_event(self) -> dict[str, Any]:
        return {
            "type": REMEDIATION_EVENT,
            "detail": {
                "prompt": self.prompt,
                "childPrompts": list(self.child_prompts),
                "failureContext": self.failure_context,
                "origin": self.origin,
                "attempt": self.attempt,
                "coverageTargets": list(self.coverage_targets),
                "attemptedCoverageTargets": list(self.attempted_coverage_targets),
                "fingerprint": self.fingerprint,
            },
        }


def build_fix_plan(
    suites: Sequence[FailingSuite],
    *,
    origin: str,
    attempt: int,
    attempted_coverage_targets: Iterable[str] = (),
    fingerprint: str | None = None,
) -> RemediationRequest:
    attempted = list(dict.fromkeys(attempted_coverage_targets))
    children: list[str] = []
    new_targets: list[str] = []

    for suite in suites:
        ids = extract_failing_test_ids(suite.job)
        children.extend(f"Fix failing test: {test_id}" for test_id in ids)

        if suite.failure is FailureKind.COVERAGE_GATE and suite.job.coverage is not None:
            targets = [
                item.location
                for item in suite.job.coverage.uncovered_lines
                if item.location not in attempted
            ]
            new_targets.extend(targets)
            children.extend(f"Raise coverage for {target}" for target in targets)
            if not targets and not ids:
                children.append(f"Raise coverage in {suite.label} to meet the coverage gate")
            continue

        if not ids:
            if suite.kind == "frontend":
                children.append("Fix failing frontend tests")
            elif suite.kind == "backend":
                children.append("Fix failing backend tests")
            else:
                children.append(f"Fix failing tests in {suite.label}")

    child_prompts = [prompt for prompt in dict.fromkeys(child.strip() for child in children) if prompt]
    if not child_prompts:
        child_prompts = [FALLBACK_CHILD_PROMPT]

    return RemediationRequest(
        prompt=FIX_PARENT_PROMPT,
        child_prompts=child_prompts,
        failure_context=build_failure_context(suites),
        origin=origin,
        attempt=attempt,
        coverage_targets=list(dict.fromkeys(new_targets)),
        attempted_coverage_targets=attempted,
        fingerprint=fingerprint,
    )


__all__ = [
    "FIX_PARENT_PROMPT",
    "FailingSuite",
    "REMEDIATION_EVENT",
    "RemediationRequest",
    "TRUNCATION_MARKER",
    "build_failure_context",
    "build_fix_plan",
    "build_job_failure_context",
    "collect_recent_log_lines",
]
