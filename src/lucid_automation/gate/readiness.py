"""Commit and merge readiness derived from branch state and test jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..jobs.models import (
    TEST_JOB_TYPES,
    Job,
    JobStatus,
    JobType,
    StagedFile,
    is_style_only,
)

PASSING_TEST_STATUSES = frozenset({"passed", "succeeded", "success"})
UNMERGEABLE_STATUSES = frozenset({"merged", "protected"})
COVERAGE_PREVIEW_LINES = 6


class BranchState(BaseModel):
    """Read-only view of a branch as reported by the git-workflow collaborator."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )

    name: str | None = None
    status: str | None = None
    staged_files: list[StagedFile] = Field(default_factory=list)
    last_test_status: str | None = None
    tests_required: bool | None = None
    last_test_summary: dict[str, Any] | None = None
    merge_blocked_reason: str | None = None

    @field_validator("staged_files", mode="before")
    @classmethod
    def _coerce_staged(cls, value: Any) -> list[Any]:
        if not isinstance(value, (list, tuple)):
            return []
        return [{"path": item} if isinstance(item, str) else item for item in value]

    @field_validator("status", "last_test_status")
    @classmethod
    def _lower(cls, value: str | None) -> str | None:
        return value.strip().lower() if isinstance(value, str) else value

    @property
    def has_staged(self) -> bool:
        return bool(self.staged_files)


def is_passing_test_status(status: str | None) -> bool:
    return isinstance(status, str) and status.strip().lower() in PASSING_TEST_STATUSES


def is_trunk(branch: BranchState | None, trunk_branch: str = "main") -> bool:
    name = (branch.name or "").strip() if branch else ""
    return not name or name == trunk_branch


def commit_ready(branch: BranchState | None, *, trunk_branch: str = "main") -> bool:
    if branch is None or is_trunk(branch, trunk_branch) or not branch.has_staged:
        return False
    return is_style_only(branch.staged_files) or is_passing_test_status(branch.last_test_status)


def merge_ready(branch: BranchState | None, *, trunk_branch: str = "main") -> bool:
    if branch is None or is_trunk(branch, trunk_branch) or branch.has_staged:
        return False
    if branch.status in UNMERGEABLE_STATUSES:
        return False
    return branch.tests_required is False or is_passing_test_status(branch.last_test_status)


def describe_merge_blocker(branch: BranchState | None) -> str:
    if branch is None:
        return "Tests must pass before merge"
    if branch.status == "merged":
        return "Branch has already been merged"
    if branch.status == "protected":
        return "Protected branches cannot be merged"
    if branch.has_staged:
        return "Commit staged changes before merging"
    if branch.last_test_status == "failed":
        return branch.merge_blocked_reason or "Resolve failing tests before merging"
    return "Run tests before merging"


def _as_test_run(test_run: Job | Mapping[str, Any] | None) -> dict[str, Any]:
    if test_run is None:
        return {}
    if isinstance(test_run, Job):
        payload = test_run.to_payload()
        if test_run.status is not JobStatus.SUCCEEDED:
            payload["workspaceRuns"] = [
                {"workspace": test_run.type.scope.value, "status": test_run.status.value}
            ]
        return payload
    return dict(test_run)


def build_proof_failure_message(test_run: Job | Mapping[str, Any] | None) -> str:
    """Human readable reason a test run cannot serve as a passing proof."""

    run = _as_test_run(test_run)
    error = run.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()

    summary = run.get("summary") if isinstance(run.get("summary"), Mapping) else {}
    coverage = summary.get("coverage") if isinstance(summary.get("coverage"), Mapping) else {}
    changed_files = coverage.get("changedFiles") if isinstance(coverage.get("changedFiles"), Mapping) else {}
    if coverage.get("passed") is False or changed_files.get("passed") is False:
        uncovered = coverage.get("uncoveredLines")
        if isinstance(uncovered, list) and uncovered:
            first = uncovered[0] if isinstance(uncovered[0], Mapping) else {}
            parts = [str(first.get(key) or "").strip() for key in ("workspace", "file")]
            location = "/".join(part for part in parts if part)
            lines = [int(value) for value in first.get("lines") or [] if _is_number(value)]
            if location and lines:
                preview = ", ".join(str(line) for line in lines[:COVERAGE_PREVIEW_LINES])
                suffix = ", …" if len(lines) > COVERAGE_PREVIEW_LINES else ""
                return f"Coverage gate failed: uncovered lines in {location} ({preview}{suffix})."
            if location:
                return f"Coverage gate failed: uncovered lines in {location}."
        return "Branch workflow tests failed the coverage gate. Fix coverage and try again."

    for workspace_run in run.get("workspaceRuns") or []:
        if not isinstance(workspace_run, Mapping):
            continue
        status = workspace_run.get("status")
        if status and status != "succeeded" and workspace_run.get("workspace"):
            return f"Branch workflow tests failed in {workspace_run['workspace']}."

    return "Branch workflow tests failed. Fix failing tests and try again."


def _is_number(value: Any) -> bool:
    try:
        int(value)
    except (TypeError, ValueError):
        return False
    return True


@dataclass(frozen=True, slots=True)
class GateSignal:
    ok: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Readiness:
    tests: GateSignal
    coverage: GateSignal
    merge: GateSignal
    commit_ready: bool
    merge_ready: bool

    def to_payload(self) -> dict[str, Any]:
        return {
            "tests": {"ok": self.tests.ok, "reason": self.tests.reason},
            "coverage": {"ok": self.coverage.ok, "reason": self.coverage.reason},
            "merge": {"ok": self.merge.ok, "reason": self.merge.reason},
            "commitReady": self.commit_ready,
            "mergeReady": self.merge_ready,
        }


def evaluate_readiness(
    branch: BranchState | None,
    jobs: Mapping[JobType, Job | None],
    *,
    trunk_branch: str = "main",
    tracked_types: Sequence[JobType] = TEST_JOB_TYPES,
) -> Readiness:
    """Per-branch ``{tests, coverage, merge}`` signals with a reason for every block."""

    tracked = [jobs.get(kind) for kind in tracked_types]
    present = [job for job in tracked if job is not None]

    coverage_failures = [job for job in present if job.coverage is not None and job.coverage.gate_failed]
    if coverage_failures:
        coverage = GateSignal(False, build_proof_failure_message(coverage_failures[0]))
    else:
        coverage = GateSignal(True)

    staged = branch.staged_files if branch else []
    if staged and is_style_only(staged):
        tests = GateSignal(True, "Style-only changes do not require tests")
    elif not present or len(present) < len(tracked):
        if branch is not None and is_passing_test_status(branch.last_test_status):
            tests = GateSignal(True)
        else:
            tests = GateSignal(False, "Run tests before committing")
    elif any(not job.is_final for job in present):
        tests = GateSignal(False, "Tests are still running")
    else:
        failed = [job for job in present if job.status is not JobStatus.SUCCEEDED]
        if failed:
            tests = GateSignal(False, build_proof_failure_message(failed[0]))
        elif coverage_failures:
            tests = GateSignal(False, coverage.reason)
        else:
            tests = GateSignal(True)

    mergeable = merge_ready(branch, trunk_branch=trunk_branch)
    merge = GateSignal(True) if mergeable else GateSignal(False, describe_merge_blocker(branch))
    if branch is not None and is_trunk(branch, trunk_branch):
        merge = GateSignal(False, f"Cannot merge {trunk_branch} into itself")

    return Readiness(
        tests=tests,
        coverage=coverage,
        merge=merge,
        commit_ready=commit_ready(branch, trunk_branch=trunk_branch),
        merge_ready=mergeable,
    )


__all__ = [
    "BranchState",
    "GateSignal",
    "Readiness",
    "build_proof_failure_message",
    "commit_ready",
    "describe_merge_blocker",
    "evaluate_readiness",
    "is_passing_test_status",
    "is_style_only",
    "is_trunk",
    "merge_ready",
]
