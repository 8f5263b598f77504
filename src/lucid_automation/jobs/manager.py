"""Client-side lifecycle tracking for automation jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from pydantic import ValidationError

from ..config import AutomationSettings
from .api import AutomationApiError, JobApi, RequestValidationError, TransportError
from .models import Job, JobStatus, JobType, SkipResult, StagedFile

logger = logging.getLogger(__name__)

JobListener = Callable[[Job], None]

CLIENT_LOG_LIMIT = 200

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created(job: Job) -> datetime:
    return job.created_at or _EPOCH


def should_run_test(
    job_type: JobType | str,
    jobs: Iterable[Job],
    staged_files: Iterable[StagedFile],
) -> bool:
    """Return False only when the latest run of ``job_type`` succeeded and nothing staged changed since."""

    kind = JobType.coerce(job_type)
    runs = [job for job in jobs if job.type is kind]
    if not runs:
        return True
    latest = max(runs, key=_created)
    if latest.status is not JobStatus.SUCCEEDED or latest.completed_at is None:
        return True
    for staged in staged_files:
        if staged.timestamp is None or staged.timestamp > latest.completed_at:
            return True
    return False


@dataclass(slots=True)
class _PollHandle:
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class JobLifecycleManager:
    """Start jobs, keep one record per id, and poll every non-final job to completion.

    Each job id gets its own polling task; a task issues its next status
    request only after the previous one resolved, so writes for one id are
    serialized while different ids progress independently.
    """

    def __init__(
        self,
        api: JobApi,
        *,
        poll_interval: float = 2.0,
        transport_retries: int = 3,
        log_limit: int = CLIENT_LOG_LIMIT,
        listeners: Iterable[JobListener] = (),
    ) -> None:
        self._api = api
        self._poll_interval = poll_interval
        self._transport_retries = transport_retries
        self._log_limit = log_limit
        self._listeners: list[JobListener] = list(listeners)
        self._jobs: dict[str, dict[str, Job]] = {}
        self._polls: dict[tuple[str, str], _PollHandle] = {}
        self._poll_errors: dict[str, str] = {}

    @classmethod
    def from_settings(
        cls, api: JobApi, settings: AutomationSettings, **kwargs: Any
    ) -> "JobLifecycleManager":
        return cls(
            api,
            poll_interval=settings.job_poll_interval,
            transport_retries=settings.job_poll_retries,
            **kwargs,
        )

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    @property
    def poll_errors(self) -> dict[str, str]:
        return dict(self._poll_errors)

    def jobs(self, project_id: str) -> list[Job]:
        """Jobs for a project, newest first."""

        return sorted(self._jobs.get(project_id, {}).values(), key=_created, reverse=True)

    def get(self, project_id: str, job_id: str) -> Job | None:
        return self._jobs.get(project_id, {}).get(job_id)

    def latest(self, project_id: str, job_type: JobType | str) -> Job | None:
        kind = JobType.coerce(job_type)
        for job in self.jobs(project_id):
            if job.type is kind:
                return job
        return None

    def is_polling(self, project_id: str, job_id: str) -> bool:
        return (project_id, job_id) in self._polls

    def should_run_test(
        self, project_id: str, job_type: JobType | str, staged_files: Iterable[StagedFile]
    ) -> bool:
        return should_run_test(job_type, self._jobs.get(project_id, {}).values(), staged_files)

    def _store(self, job: Job) -> Job:
        bucket = self._jobs.setdefault(job.project_id, {})
        existing = bucket.get(job.id)
        if existing is not None and existing.is_final and job.status is not existing.status:
            return existing
        stored = job.trimmed(self._log_limit)
        bucket[job.id] = stored
        for listener in list(self._listeners):
            listener(stored)
        return stored

    def _parse(self, body: Any, *, fallback: str) -> Job:
        if not isinstance(body, Mapping):
            raise AutomationApiError(fallback)
        try:
            return Job.model_validate(body)
        except ValidationError as exc:
            raise RequestValidationError(f"{fallback}: {exc.errors()[0]['msg']}") from exc

    async def start_job(
        self,
        job_type: JobType | str,
        *,
        project_id: str,
        payload: Mapping[str, Any] | None = None,
        staged_files: Iterable[StagedFile] | None = None,
    ) -> Job | SkipResult:
        """Request a run; returns the job, or a skip result when the run is unnecessary."""

        kind = JobType.coerce(job_type)
        if not project_id:
            raise RequestValidationError("Select a project before running automation jobs")

        if staged_files is not None and kind.is_test:
            if not self.should_run_test(project_id, kind, staged_files):
                latest = self.latest(project_id, kind)
                logger.info(
                    "Skipping test run with no changes since last success",
                    extra={"project_id": project_id, "job_type": kind.tag},
                )
                return SkipResult(
                    reason="unchanged-since-last-success",
                    indicator=latest.id if latest else None,
                )

        data = await self._api.start_job(project_id, kind.tag, payload)
        if data.get("skipped"):
            result = SkipResult(
                reason=str(data.get("reason") or "skipped"),
                branch=data.get("branch"),
                indicator=data.get("indicator"),
            )
            logger.info(
                "Server skipped job",
                extra={"project_id": project_id, "job_type": kind.tag, "reason": result.reason},
            )
            return result

        job = self._store(self._parse(data.get("job"), fallback="Failed to start automation job"))
        self._poll_errors.pop(job.id, None)
        logger.info(
            "Started job",
            extra={"project_id": project_id, "job_id": job.id, "job_type": kind.tag},
        )
        if not job.is_final:
            self._ensure_polling(job)
        return job

    async def cancel_job(self, job_id: str, *, project_id: str) -> Job | None:
        """Stop polling ``job_id`` and ask the server to cancel it."""

        self._stop_polling(project_id, job_id)
        data = await self._api.cancel_job(project_id, job_id)
        body = data.get("job")
        if isinstance(body, Mapping):
            return self._store(self._parse(body, fallback="Failed to cancel job"))
        return self.get(project_id, job_id)

    async def refresh_jobs(self, project_id: str) -> list[Job]:
        """Merge the server's job list into the store and poll anything still running."""

        data = await self._api.list_jobs(project_id)
        for body in data.get("jobs") or []:
            stored = self._store(self._parse(body, fallback="Failed to list jobs"))
            if not stored.is_final:
                self._ensure_polling(stored)
        return self.jobs(project_id)

    async def wait_for_job(self, project_id: str, job_id: str) -> Job | None:
        handle = self._polls.get((project_id, job_id))
        if handle is not None and handle.task is not None:
            await handle.task
        return self.get(project_id, job_id)

    async def aclose(self) -> None:
        handles = list(self._polls.values())
        for handle in handles:
            handle.stop.set()
        tasks = [handle.task for handle in handles if handle.task is not None]
        if tasks:
            await asyncio.gather(*tasks)
        self._polls.clear()

    def _ensure_polling(self, job: Job) -> None:
        key = (job.project_id, job.id)
        if key in self._polls:
            return
        handle = _PollHandle()
        self._polls[key] = handle
        handle.task = asyncio.get_running_loop().create_task(
            self._poll(job.project_id, job.id, handle), name=f"poll-job-{job.id}"
        )

    def _stop_polling(self, project_id: str, job_id: str) -> None:
        handle = self._polls.pop((project_id, job_id), None)
        if handle is not None:
            handle.stop.set()

    async def _poll(self, project_id: str, job_id: str, handle: _PollHandle) -> None:
        failures = 0
        try:
            while True:
                try:
                    await asyncio.wait_for(handle.stop.wait(), timeout=self._poll_interval)
                    return
                except asyncio.TimeoutError:
                    pass

                try:
                    data = await self._api.get_job(project_id, job_id)
                    job = self._parse(data.get("job"), fallback="Failed to fetch job")
                except TransportError as exc:
                    failures += 1
                    if failures > self._transport_retries:
                        self._poll_errors[job_id] = exc.message
                        logger.warning(
                            "Giving up polling job after transport failures",
                            extra={"job_id": job_id, "failures": failures},
                        )
                        return
                    logger.debug("Job poll failed; retrying", extra={"job_id": job_id})
                    continue
                except AutomationApiError as exc:
                    self._poll_errors[job_id] = exc.message
                    logger.warning(
                        "Stopped polling job", extra={"job_id": job_id, "error": exc.message}
                    )
                    return

                failures = 0
                stored = self._store(job)
                if stored.is_final:
                    logger.info(
                        "Job reached terminal state",
                        extra={"job_id": job_id, "status": stored.status.value},
                    )
                    return
                if handle.stop.is_set():
                    return
        finally:
            if self._polls.get((project_id, job_id)) is handle:
                del self._polls[(project_id, job_id)]


__all__ = ["CLIENT_LOG_LIMIT", "JobLifecycleManager", "JobListener", "should_run_test"]
