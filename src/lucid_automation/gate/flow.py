"""Post-test commit flows and proof submission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Sequence

from ..autofix.loop import RunIntent, RunOrigin
from ..jobs.api import AutomationApiError, BranchApi, DomainBlockedError, RequestValidationError
from ..jobs.models import TEST_JOB_TYPES, Job, JobStatus, JobType
from ..prompts import Prompt, PromptKind, PromptSink
from .readiness import BranchState, build_proof_failure_message, is_trunk

logger = logging.getLogger(__name__)

STALE_PROOF_PHRASES: tuple[str, ...] = (
    "run tests to prove",
    "resolve failing tests and run tests again",
    "resolve failing tests",
    "run backend tests again",
    "record a passing proof",
)


def is_stale_proof_error(message: str | None) -> bool:
    text = (message or "").lower()
    return any(phrase in text for phrase in STALE_PROOF_PHRASES)


class GateFlow(str, Enum):
    NONE = "none"
    CANNOT_COMMIT = "cannot-commit"
    NOTHING_TO_COMMIT = "nothing-to-commit"
    BLOCKED = "blocked"
    AUTO_COMMIT = "auto-commit"
    CONTINUE_TO_COMMITS_VIEW = "continue-to-commits-view"
    CONTINUE_TO_COMMIT = "continue-to-commit"


@dataclass(frozen=True, slots=True)
class GateOutcome:
    flow: GateFlow
    prompt: Prompt | None = None
    result: dict[str, Any] | None = None


class CommitGate:
    """Drive exactly one commit flow after a tracked automation run passes."""

    def __init__(
        self,
        api: BranchApi,
        *,
        notify: PromptSink | None = None,
        trunk_branch: str = "main",
        tracked_types: Sequence[JobType] = TEST_JOB_TYPES,
    ) -> None:
        self._api = api
        self._notify = notify
        self._trunk_branch = trunk_branch
        self._tracked_types = tuple(tracked_types)

    @property
    def trunk_branch(self) -> str:
        return self._trunk_branch

    def build_proof_payload(self, jobs: Mapping[JobType, Job | None]) -> dict[str, Any] | None:
        """Proof body, or ``None`` unless every tracked test job succeeded."""

        tracked = [jobs.get(kind) for kind in self._tracked_types]
        if any(job is None or job.status is not JobStatus.SUCCEEDED for job in tracked):
            return None
        return {
            "jobIds": [job.id for job in tracked if job is not None],
            "frontendJobId": getattr(jobs.get(JobType.FRONTEND_TEST), "id", None),
            "backendJobId": getattr(jobs.get(JobType.BACKEND_TEST), "id", None),
        }

    async def submit_proof(
        self, project_id: str, branch: str, jobs: Mapping[JobType, Job | None]
    ) -> bool:
        payload = self.build_proof_payload(jobs)
        if payload is None:
            return False
        await self._api.record_test_proof(project_id, branch, payload)
        logger.info("Recorded test proof", extra={"project_id": project_id, "branch": branch})
        return True

    async def commit(
        self,
        project_id: str,
        branch: str,
        *,
        jobs: Mapping[JobType, Job | None],
        message: str | None = None,
    ) -> dict[str, Any]:
        """Commit staged changes, re-proving once if the server calls the proof stale."""

        body = {"message": message} if message else {}
        try:
            return await self._api.commit_branch(project_id, branch, body)
        except (RequestValidationError, DomainBlockedError) as exc:
            if not is_stale_proof_error(exc.message):
                raise
            logger.info(
                "Commit requires a fresh test proof; re-submitting",
                extra={"project_id": project_id, "branch": branch},
            )
            if not await self.submit_proof(project_id, branch, jobs):
                raise
        return await self._api.commit_branch(project_id, branch, body)

    async def on_tests_passed(
        self,
        project_id: str,
        branch: BranchState | None,
        intent: RunIntent | None,
        jobs: Mapping[JobType, Job | None],
        *,
        commit_message: str | None = None,
    ) -> GateOutcome:
        if intent is None or intent.source is not RunOrigin.AUTOMATION:
            return GateOutcome(GateFlow.NONE)

        if branch is None or is_trunk(branch, self._trunk_branch):
            return self._emit_outcome(
                GateFlow.CANNOT_COMMIT,
                Prompt(
                    kind=PromptKind.COMMIT_BLOCKED,
                    title="Cannot commit",
                    message=f"Switch to a working branch before committing; {self._trunk_branch} cannot be committed to directly.",
                    variant="danger",
                    project_id=project_id,
                ),
            )
        branch_name = branch.name or ""

        if not branch.has_staged:
            return self._emit_outcome(
                GateFlow.NOTHING_TO_COMMIT,
                Prompt(
                    kind=PromptKind.COMMIT_BLOCKED,
                    title="Nothing to commit",
                    message="Tests passed but there are no staged changes to commit.",
                    project_id=project_id,
                ),
            )

        for kind in self._tracked_types:
            job = jobs.get(kind)
            if job is not None and job.coverage is not None and job.coverage.gate_failed:
                return self._blocked(project_id, build_proof_failure_message(job))

        if intent.auto_commit:
            try:
                await self.submit_proof(project_id, branch_name, jobs)
                result = await self.commit(
                    project_id, branch_name, jobs=jobs, message=commit_message
                )
            except AutomationApiError as exc:
                logger.warning(
                    "Automated commit failed",
                    extra={"project_id": project_id, "branch": branch_name, "error": exc.message},
                )
                return self._blocked(project_id, exc.message)
            logger.info("Automated commit completed", extra={"project_id": project_id, "branch": branch_name})
            return GateOutcome(GateFlow.AUTO_COMMIT, result=result)

        if intent.return_to_commits:
            try:
                await self.submit_proof(project_id, branch_name, jobs)
            except AutomationApiError as exc:
                return self._blocked(project_id, exc.message)
            return self._emit_outcome(
                GateFlow.CONTINUE_TO_COMMITS_VIEW,
                Prompt(
                    kind=PromptKind.CONTINUE_TO_COMMITS_VIEW,
                    title="Tests passed",
                    message="Tests passed. Continue to the commits view to finish your commit.",
                    confirm_text="Go to commits",
                    cancel_text="Stay here",
                    project_id=project_id,
                ),
            )

        async def _continue() -> dict[str, Any]:
            await self.submit_proof(project_id, branch_name, jobs)
            return await self.commit(project_id, branch_name, jobs=jobs, message=commit_message)

        return self._emit_outcome(
            GateFlow.CONTINUE_TO_COMMIT,
            Prompt(
                kind=PromptKind.CONTINUE_TO_COMMIT,
                title="Tests passed",
                message="All tests passed. Continue to commit your staged changes?",
                confirm_text="Commit",
                cancel_text="Not now",
                project_id=project_id,
                on_confirm=_continue,
            ),
        )

    def _blocked(self, project_id: str, reason: str) -> GateOutcome:
        return self._emit_outcome(
            GateFlow.BLOCKED,
            Prompt(
                kind=PromptKind.COMMIT_BLOCKED,
                title="Commit blocked",
                message=reason or "Failed to commit staged changes",
                variant="danger",
                project_id=project_id,
            ),
        )

    def _emit_outcome(self, flow: GateFlow, prompt: Prompt) -> GateOutcome:
        if self._notify is not None:
            try:
                self._notify(prompt)
            except Exception:
                logger.exception("Prompt sink raised", extra={"prompt_kind": prompt.kind.value})
        return GateOutcome(flow, prompt=prompt)


__all__ = [
    "CommitGate",
    "GateFlow",
    "GateOutcome",
    "STALE_PROOF_PHRASES",
    "is_stale_proof_error",
]
