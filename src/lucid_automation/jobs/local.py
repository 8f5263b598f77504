"""In-process job backend that runs project commands as child processes."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from ..processes import CommandNotFoundError, CommandRunner, PortReclaimer, RunningCommand
from ..processes.utils import strip_ansi
from ..projects import ProjectLoadError, ProjectProfile, TestingSettings
from .api import RequestValidationError
from .coverage import (
    collect_uncovered_lines,
    evaluate_coverage_gate,
    parse_coverage_from_logs,
    read_coverage_totals,
)
from .models import Job, JobLogEntry, JobStatus, JobSummary, JobType, is_style_only, utcnow

logger = logging.getLogger(__name__)

SERVER_LOG_LIMIT = 500

_PACKAGE_NAME = re.compile(r"^(@[a-z0-9-~][a-z0-9-._~]*/)?[a-z0-9-~][a-z0-9-._~]*$", re.IGNORECASE)


class ProjectLookup(Protocol):
    def get(self, project_id: str) -> ProjectProfile:
        ...


class JobRecorder(Protocol):
    def record_job(self, job: Job) -> Any:
        ...


@dataclass(slots=True)
class JobDefinition:
    display_name: str
    command: str
    args: list[str]
    cwd: Path


DefinitionBuilder = Callable[[ProjectProfile, JobType, Mapping[str, Any]], JobDefinition]


def _require_dir(label: str, path: Path) -> Path:
    if not path.is_dir():
        raise RequestValidationError(f"{label} not found at {path}")
    return path


def _package_spec(payload: Mapping[str, Any], *, with_version: bool) -> str:
    name = str(payload.get("packageName") or "").strip()
    if not name or not _PACKAGE_NAME.match(name):
        raise RequestValidationError("A valid packageName is required")
    version = str(payload.get("version") or "").strip()
    if with_version and version:
        return f"{name}@{version}"
    return name


def build_job_definition(
    project: ProjectProfile, job_type: JobType, payload: Mapping[str, Any]
) -> JobDefinition:
    """Map a job type onto the command that implements it for ``project``."""

    root = project.workspace_path("")
    if job_type.scope.value == "git":
        cwd = _require_dir("Project workspace", root)
        if job_type is JobType.GIT_STATUS:
            return JobDefinition(job_type.label, "git", ["status", "--short", "--branch"], cwd)
        return JobDefinition(job_type.label, "git", ["pull", "--ff-only"], cwd)

    workspace = project.workspace_path(job_type.scope.value)
    label = f"{job_type.scope.value.capitalize()} workspace"
    has_package = (workspace / "package.json").is_file()
    has_requirements = (workspace / "requirements.txt").is_file()

    if job_type.kind in ("add-package", "remove-package"):
        adding = job_type.kind == "add-package"
        spec = _package_spec(payload, with_version=adding)
        if has_package:
            args = ["install" if adding else "uninstall", spec]
            if payload.get("dev"):
                args.append("--save-dev")
            verb = "Add" if adding else "Remove"
            where = "to" if adding else "from"
            return JobDefinition(
                f"{verb} {spec} {where} {job_type.scope.value}",
                "npm",
                args,
                _require_dir(label, workspace),
            )
        if has_requirements and job_type.scope.value == "backend":
            args = ["-m", "pip", "install", spec] if adding else ["-m", "pip", "uninstall", "-y", spec]
            return JobDefinition(job_type.label, "python", args, _require_dir(label, workspace))
        raise RequestValidationError(f"{job_type.scope.value.capitalize()} package.json not found")

    if has_package:
        npm_args = {
            "install": ["install"],
            "lint": ["run", "lint"],
            "test": ["run", "test:coverage"],
        }[job_type.kind]
        return JobDefinition(job_type.label, "npm", npm_args, _require_dir(label, workspace))

    if has_requirements and job_type.scope.value == "backend":
        python_args = {
            "install": ["-m", "pip", "install", "-r", "requirements.txt"],
            "lint": ["-m", "flake8"],
            "test": ["-m", "pytest"],
        }[job_type.kind]
        return JobDefinition(job_type.label, "python", python_args, _require_dir(label, workspace))

    raise RequestValidationError(f"{label} has no package.json or requirements.txt")


@dataclass(slots=True)
class _JobRecord:
    id: str
    type: JobType
    project_id: str
    display_name: str
    command: str
    args: list[str]
    cwd: Path
    coverage_target: int
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    logs: list[JobLogEntry] = field(default_factory=list)
    summary: dict[str, Any] = field(default_factory=dict)
    process: RunningCommand | None = None
    task: asyncio.Task[None] | None = None

    def snapshot(self) -> Job:
        return Job(
            id=self.id,
            type=self.type,
            project_id=self.project_id,
            status=self.status,
            display_name=self.display_name,
            command=self.command,
            args=list(self.args),
            cwd=str(self.cwd),
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            exit_code=self.exit_code,
            error=self.error,
            logs=list(self.logs),
            summary=JobSummary.model_validate(self.summary) if self.summary else None,
        )


class LocalJobBackend:
    """Serve the job endpoints in-process.

    Answers with the same ``{"success": ..., "job": ...}`` bodies as the
    project server so ``JobLifecycleManager`` can drive it directly.
    """

    def __init__(
        self,
        projects: ProjectLookup,
        *,
        runner: CommandRunner | None = None,
        reclaimer: PortReclaimer | None = None,
        global_testing: TestingSettings | None = None,
        recorder: JobRecorder | None = None,
        definition_builder: DefinitionBuilder = build_job_definition,
        max_log_entries: int = SERVER_LOG_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._projects = projects
        self._runner = runner or CommandRunner()
        self._reclaimer = reclaimer or PortReclaimer()
        self._global_testing = global_testing or TestingSettings()
        self._recorder = recorder
        self._build_definition = definition_builder
        self._max_log_entries = max_log_entries
        self._clock = clock or utcnow
        self._records: dict[str, _JobRecord] = {}
        self._restored: dict[str, Job] = {}

    def _project(self, project_id: str) -> ProjectProfile:
        try:
            return self._projects.get(project_id)
        except ProjectLoadError as exc:
            raise RequestValidationError("Project not found", status_code=404) from exc

    def _record(self, project_id: str, job_id: str) -> _JobRecord:
        record = self._records.get(job_id)
        if record is None or record.project_id != project_id:
            raise RequestValidationError("Job not found", status_code=404)
        return record

    def _persist(self, record: _JobRecord) -> None:
        if self._recorder is not None:
            self._recorder.record_job(record.snapshot())

    def restore(self, job: Job) -> None:
        """Make a persisted job from an earlier server run visible to readers."""

        if job.id not in self._records:
            self._restored[job.id] = job

    def snapshot(self, job_id: str) -> Job | None:
        record = self._records.get(job_id)
        if record is not None:
            return record.snapshot()
        return self._restored.get(job_id)

    async def start_job(
        self, project_id: str, job_type: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        if not job_type:
            raise RequestValidationError("Job type is required")
        try:
            kind = JobType.coerce(job_type)
        except ValueError as exc:
            raise RequestValidationError(str(exc)) from exc
        project = self._project(project_id)
        body = dict(payload or {})

        staged_paths = body.get("stagedPaths") or []
        if kind.is_test and staged_paths and is_style_only(staged_paths):
            return {
                "success": True,
                "skipped": True,
                "reason": "css-only-branch",
                "branch": body.get("branchName") or None,
                "indicator": None,
            }

        definition = self._build_definition(project, kind, body)
        record = _JobRecord(
            id=uuid.uuid4().hex,
            type=kind,
            project_id=project.id,
            display_name=definition.display_name,
            command=definition.command,
            args=list(definition.args),
            cwd=definition.cwd,
            coverage_target=project.coverage_target(self._global_testing),
            created_at=self._clock(),
        )
        self._records[record.id] = record
        self._persist(record)
        record.task = asyncio.get_running_loop().create_task(
            self._run(record), name=f"job-{record.id}"
        )
        logger.info(
            "Queued job",
            extra={"job_id": record.id, "job_type": kind.tag, "project_id": project.id},
        )
        return {"success": True, "job": record.snapshot().to_payload()}

    async def get_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        restored = self._restored.get(job_id)
        if restored is not None and restored.project_id == project_id:
            return {"success": True, "job": restored.to_payload()}
        return {"success": True, "job": self._record(project_id, job_id).snapshot().to_payload()}

    async def list_jobs(self, project_id: str) -> dict[str, Any]:
        self._project(project_id)
        jobs = [job for job in self._restored.values() if job.project_id == project_id]
        jobs.extend(
            record.snapshot() for record in self._records.values() if record.project_id == project_id
        )
        return {"success": True, "jobs": [job.to_payload() for job in jobs]}

    async def cancel_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        record = self._record(project_id, job_id)
        if not record.status.is_final:
            record.status = JobStatus.CANCELLED
            record.completed_at = self._clock()
            self._append_log(record, "stderr", "Job cancelled by user")
            if record.process is not None:
                await self._reclaimer.kill_process_tree(record.process.pid)
            self._persist(record)
            logger.info("Cancelled job", extra={"job_id": job_id, "project_id": project_id})
        return {"success": True, "job": record.snapshot().to_payload()}

    async def wait(self, job_id: str) -> Job | None:
        record = self._records.get(job_id)
        if record is not None and record.task is not None:
            await record.task
        return self.snapshot(job_id)

    async def aclose(self) -> None:
        for record in list(self._records.values()):
            if not record.status.is_final:
                await self.cancel_job(record.project_id, record.id)
        tasks = [record.task for record in self._records.values() if record.task is not None]
        if tasks:
            await asyncio.gather(*tasks)

    def _append_log(self, record: _JobRecord, stream: str, message: str) -> None:
        record.logs.append(
            JobLogEntry(stream=stream, message=strip_ansi(message), timestamp=self._clock())
        )
        if len(record.logs) > self._max_log_entries:
            del record.logs[: len(record.logs) - self._max_log_entries]

    def _finish(self, record: _JobRecord, status: JobStatus, *, error: str | None = None) -> None:
        if record.status is JobStatus.CANCELLED:
            record.completed_at = record.completed_at or self._clock()
        else:
            record.status = status
            record.completed_at = self._clock()
            if error:
                record.error = error
        self._persist(record)
        logger.info(
            "Job finished",
            extra={"job_id": record.id, "status": record.status.value, "exit_code": record.exit_code},
        )

    async def _run(self, record: _JobRecord) -> None:
        try:
            running = await self._runner.start(record.command, record.args, cwd=record.cwd)
        except (CommandNotFoundError, OSError) as exc:
            self._append_log(record, "stderr", str(exc))
            self._finish(record, JobStatus.FAILED, error=str(exc))
            return

        record.process = running
        if record.status is JobStatus.CANCELLED:
            await self._reclaimer.kill_process_tree(running.pid)
        else:
            record.status = JobStatus.RUNNING
            record.started_at = self._clock()

        try:
            exit_code = await running.stream(
                lambda stream, line: self._append_log(record, stream, line)
            )
        except Exception as exc:
            logger.exception("Reading job output failed", extra={"job_id": record.id})
            await self._reclaimer.kill_process_tree(running.pid)
            message = f"Job output could not be read: {exc}"
            self._append_log(record, "stderr", message)
            self._finish(record, JobStatus.FAILED, error=message)
            return
        record.exit_code = exit_code
        record.summary["exitCode"] = exit_code

        status = JobStatus.SUCCEEDED if exit_code == 0 else JobStatus.FAILED
        error = None if exit_code == 0 else f"Process exited with code {exit_code}"
        if status is JobStatus.SUCCEEDED and record.type.is_test and record.status is not JobStatus.CANCELLED:
            status, error = self._apply_coverage_gate(record)
        self._finish(record, status, error=error)

    def _apply_coverage_gate(self, record: _JobRecord) -> tuple[JobStatus, str | None]:
        totals = read_coverage_totals(record.cwd) or parse_coverage_from_logs(
            entry.message for entry in record.logs
        )
        coverage = evaluate_coverage_gate(
            totals,
            target=record.coverage_target,
            uncovered=collect_uncovered_lines(record.cwd, workspace=record.type.scope.value),
        )
        record.summary["coverage"] = coverage.model_dump(mode="json", by_alias=True)
        self._append_log(record, "stdout", coverage.message or "")
        if coverage.passed:
            record.summary["error"] = None
            return JobStatus.SUCCEEDED, None
        record.summary["error"] = coverage.message
        return JobStatus.FAILED, coverage.message


__all__ = [
    "DefinitionBuilder",
    "JobDefinition",
    "LocalJobBackend",
    "SERVER_LOG_LIMIT",
    "build_job_definition",
]
