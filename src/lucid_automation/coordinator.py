"""Wire job lifecycle, auto-fix loop and commit gate for the focused project."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from .autofix.loop import (
    AutoFixController,
    HaltReason,
    LoopOutcome,
    ProjectSession,
    RunOrigin,
    Verdict,
)
from .gate.flow import CommitGate, GateOutcome
from .gate.readiness import BranchState
from .jobs.api import AutomationApiError
from .jobs.manager import JobLifecycleManager
from .jobs.models import Job, JobType, SkipResult, StagedFile

logger = logging.getLogger(__name__)

BranchStateProvider = Callable[[str], "BranchState | None | Awaitable[BranchState | None]"]


@dataclass(frozen=True, slots=True)
class CoordinatorResult:
    loop: LoopOutcome
    gate: GateOutcome | None = None


class RunCoordinator:
    """Single logical actor that reacts to job transitions of the focused project.

    Job updates arrive through a manager listener; terminal updates of
    tracked test jobs queue an evaluation, and evaluations are serialized
    by a lock so the session is only mutated by one step at a time.
    """

    def __init__(
        self,
        manager: JobLifecycleManager,
        controller: AutoFixController,
        gate: CommitGate,
        *,
        branch_state: BranchStateProvider | None = None,
        commit_message: Callable[[str], str | None] | None = None,
    ) -> None:
        self._manager = manager
        self._controller = controller
        self._gate = gate
        self._branch_state = branch_state
        self._commit_message = commit_message
        self._session: ProjectSession | None = None
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[Any]] = set()
        self._evaluation_queued = False
        self._last_result: CoordinatorResult | None = None
        manager.add_listener(self._on_job)

    @property
    def session(self) -> ProjectSession | None:
        return self._session

    @property
    def last_result(self) -> CoordinatorResult | None:
        return self._last_result

    def focus(self, project_id: str) -> ProjectSession:
        """Start a fresh session; the previous project's session is discarded."""

        if self._session is not None and self._session.project_id == project_id:
            return self._session
        self._session = self._controller.open_session(project_id)
        logger.debug("Focused project", extra={"project_id": project_id})
        return self._session

    def _require_session(self) -> ProjectSession:
        if self._session is None:
            raise AutomationApiError("Select a project before running automation jobs")
        return self._session

    def tracked_jobs(self) -> dict[JobType, Job | None]:
        session = self._require_session()
        return {
            kind: self._manager.latest(session.project_id, kind)
            for kind in self._controller.tracked_types
        }

    async def run_tests(
        self,
        *,
        source: RunOrigin = RunOrigin.USER,
        auto_commit: bool = False,
        return_to_commits: bool = False,
        staged_files: Iterable[StagedFile] | None = None,
        branch_name: str | None = None,
    ) -> dict[JobType, Job | SkipResult]:
        session = self._require_session()
        staged = list(staged_files) if staged_files is not None else None
        self._controller.mark_run_started(
            session, source, auto_commit=auto_commit, return_to_commits=return_to_commits
        )
        payload: dict[str, Any] = {}
        if staged is not None:
            payload["stagedPaths"] = [item.path for item in staged]
        if branch_name:
            payload["branchName"] = branch_name

        results: dict[JobType, Job | SkipResult] = {}
        # Evaluations wait until every tracked suite of this run has been started.
        async with self._lock:
            for kind in self._controller.tracked_types:
                results[kind] = await self._manager.start_job(
                    kind, project_id=session.project_id, payload=payload, staged_files=staged
                )

        if all(isinstance(result, SkipResult) for result in results.values()):
            self._schedule_evaluation()
        return results

    async def cancel_active_runs(self) -> list[str]:
        """Cancel running tracked jobs and suppress any prompt for them."""

        session = self._require_session()
        active = [
            job for job in self.tracked_jobs().values() if job is not None and not job.is_final
        ]
        job_ids = [job.id for job in active]
        self._controller.suppress(session, job_ids)
        for job in active:
            try:
                await self._manager.cancel_job(job.id, project_id=session.project_id)
            except AutomationApiError as exc:
                logger.warning(
                    "Cancel request failed; job will be reconciled on refresh",
                    extra={"job_id": job.id, "error": exc.message},
                )
        return job_ids

    async def cancel_job(self, job_id: str, *, project_id: str) -> Job | None:
        """Cancel one job; jobs of the focused project are suppressed first."""

        session = self._session
        if session is not None and session.project_id == project_id:
            self._controller.suppress(session, [job_id])
        return await self._manager.cancel_job(job_id, project_id=project_id)

    async def evaluate(self) -> CoordinatorResult:
        async with self._lock:
            return await self._evaluate_locked()

    async def _evaluate_locked(self) -> CoordinatorResult:
        session = self._require_session()
        jobs = self.tracked_jobs()
        outcome = self._controller.evaluate(session, jobs)
        gate_outcome: GateOutcome | None = None
        if outcome.verdict is Verdict.PASSED:
            branch = await self._resolve_branch(session.project_id)
            message = self._commit_message(session.project_id) if self._commit_message else None
            gate_outcome = await self._gate.on_tests_passed(
                session.project_id, branch, outcome.intent, jobs, commit_message=message
            )
        result = CoordinatorResult(loop=outcome, gate=gate_outcome)
        self._last_result = result
        return result

    async def fix_with_ai(self) -> LoopOutcome:
        async with self._lock:
            session = self._require_session()
            return self._controller.request_fix(session, self.tracked_jobs())

    async def halt(self) -> LoopOutcome:
        async with self._lock:
            return self._controller.halt(self._require_session(), HaltReason.USER)

    async def _resolve_branch(self, project_id: str) -> BranchState | None:
        if self._branch_state is None:
            return None
        value = self._branch_state(project_id)
        if inspect.isawaitable(value):
            value = await value
        return value

    def _on_job(self, job: Job) -> None:
        session = self._session
        if session is None or job.project_id != session.project_id:
            return
        if job.type not in self._controller.tracked_types or not job.is_final:
            return
        self._schedule_evaluation()

    def _schedule_evaluation(self) -> None:
        # One queued evaluation covers every update stored before it runs.
        if self._evaluation_queued:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._evaluation_queued = True
        task = loop.create_task(self._evaluate_scheduled(), name="autofix-evaluate")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _evaluate_scheduled(self) -> None:
        async with self._lock:
            self._evaluation_queued = False
            if self._session is None:
                return
            try:
                await self._evaluate_locked()
            except Exception:
                logger.exception("Scheduled evaluation failed")

    async def drain(self) -> None:
        """Wait for scheduled evaluations to settle."""

        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def aclose(self) -> None:
        await self.drain()
        self._session = None


__all__ = ["BranchStateProvider", "CoordinatorResult", "RunCoordinator"]
