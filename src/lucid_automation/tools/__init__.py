"""Tool registration for the automation MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..autofix.loop import RunOrigin
from ..bridge.state import DEFAULT_SESSION_ID, UiStateStore
from ..config import AutomationSettings
from ..coordinator import RunCoordinator
from ..jobs.local import LocalJobBackend
from ..jobs.manager import JobLifecycleManager
from ..jobs.models import Job, JobType, SkipResult, StagedFile
from ..processes.reclaim import PortReclaimer
from ..projects import ProjectLoadError, ProjectLoader, ProjectProfile

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    start_job: Any
    job_status: Any
    list_jobs: Any
    cancel_job: Any
    cancel_tests: Any
    reclaim_ports: Any
    list_projects: Any
    push_ui_command: Any
    ui_snapshot: Any
    push_ui_snapshot: Any
    fetch_ui_commands: Any
    ack_ui_commands: Any
    run_tests: Any
    fix_with_ai: Any
    halt_autofix: Any


def _project_summary(project: ProjectProfile) -> dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "path": str(project.path),
        "frontend": project.frontend.model_dump() if project.frontend else None,
        "backend": project.backend.model_dump() if project.backend else None,
        "ports": project.derive_ports(),
        "testing": project.testing.model_dump(),
    }


def _start_payload(result: Job | SkipResult) -> dict[str, Any]:
    if isinstance(result, SkipResult):
        return {
            "success": True,
            "skipped": True,
            "reason": result.reason,
            "branch": result.branch,
            "indicator": result.indicator,
        }
    return {"success": True, "job": result.to_payload()}


def _parse_staged(items: list[dict[str, Any] | str] | None) -> list[StagedFile] | None:
    """Accept bare paths or ``{path, timestamp}`` objects; untimed entries count as changed."""

    if items is None:
        return None
    return [
        StagedFile(path=item) if isinstance(item, str) else StagedFile.model_validate(item)
        for item in items
    ]


def register_tools(
    server: FastMCP,
    *,
    backend: LocalJobBackend,
    manager: JobLifecycleManager,
    reclaimer: PortReclaimer,
    projects: ProjectLoader,
    settings: AutomationSettings,
    ui_store: UiStateStore,
    coordinator: RunCoordinator | None = None,
) -> ToolHandles:
    """Register the automation tools on the server."""

    def _require_project(project_id: str) -> ProjectProfile:
        try:
            return projects.get(project_id)
        except ProjectLoadError as exc:
            raise ValueError(f"Unknown project '{project_id}'") from exc

    def _require_coordinator(project_id: str) -> RunCoordinator:
        if coordinator is None:
            raise RuntimeError("Auto-fix coordinator is unavailable on this server")
        _require_project(project_id)
        coordinator.focus(project_id)
        return coordinator

    async def _start_job(
        project_id: str,
        job_type: str,
        payload: dict[str, Any] | None = None,
        staged_files: list[dict[str, Any] | str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a job such as ``frontend:test`` for a project.

        Test jobs given ``staged_files`` are skipped when the last run of the
        same type succeeded after every staged timestamp.
        """

        _require_project(project_id)
        try:
            kind = JobType.from_tag(job_type)
        except ValueError as exc:
            raise ValueError(
                f"{exc}. Known types: {', '.join(member.tag for member in JobType)}"
            ) from exc

        staged = _parse_staged(staged_files)
        body = dict(payload or {})
        if staged is not None:
            body.setdefault("stagedPaths", [item.path for item in staged])
        result = await manager.start_job(kind, project_id=project_id, payload=body, staged_files=staged)
        skipped = isinstance(result, SkipResult)
        _emit_log(
            context,
            "info",
            "Job skipped" if skipped else "Started job",
            extra={"project_id": project_id, "job_type": job_type, "skipped": skipped},
        )
        return _start_payload(result)

    async def _job_status(project_id: str, job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the latest record for a job."""

        result = await backend.get_job(project_id, job_id)
        _emit_log(context, "debug", "Fetched job status", extra={"job_id": job_id})
        return result["job"]

    async def _list_jobs(project_id: str, context: Context | None = None) -> list[dict[str, Any]]:
        """List jobs recorded for a project."""

        _require_project(project_id)
        result = await backend.list_jobs(project_id)
        _emit_log(context, "debug", "Listing jobs", extra={"project_id": project_id, "count": len(result["jobs"])})
        return result["jobs"]

    async def _cancel_job(project_id: str, job_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel a running job and kill its process tree."""

        if coordinator is not None:
            job = await coordinator.cancel_job(job_id, project_id=project_id)
        else:
            job = await manager.cancel_job(job_id, project_id=project_id)
        if job is None:
            raise ValueError(f"Unknown job '{job_id}'")
        _emit_log(context, "info", "Cancelled job", extra={"project_id": project_id, "job_id": job_id})
        return job.to_payload()

    async def _cancel_tests(project_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel the running test suites of a project without prompting about them."""

        cancelled = await _require_coordinator(project_id).cancel_active_runs()
        _emit_log(context, "info", "Cancelled test run", extra={"project_id": project_id, "job_ids": cancelled})
        return {"projectId": project_id, "cancelled": cancelled}

    async def _reclaim_ports(
        project_id: str | None = None,
        ports: list[int] | None = None,
        timeout_ms: int | None = None,
        interval_ms: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Terminate processes holding a project's ports (host-reserved ports are skipped)."""

        if ports is None:
            if not project_id:
                raise ValueError("Provide a project id or an explicit list of ports")
            ports = _require_project(project_id).derive_ports()
        timeout = timeout_ms if timeout_ms is not None else settings.reclaim_timeout_ms
        interval = interval_ms if interval_ms is not None else settings.reclaim_interval_ms
        freed = await reclaimer.reclaim_ports(ports, timeout_ms=timeout, interval_ms=interval)
        reserved = sorted(port for port in ports if reclaimer.is_reserved_port(port))
        _emit_log(
            context,
            "info" if freed else "warning",
            "Reclaimed ports" if freed else "Ports still occupied after timeout",
            extra={"ports": list(ports), "freed": freed},
        )
        return {"freed": freed, "ports": sorted(set(ports)), "reserved": reserved}

    def _list_projects(context: Context | None = None) -> list[dict[str, Any]]:
        """List configured projects with their derived ports."""

        catalog = [_project_summary(project) for project in projects.load_all().values()]
        _emit_log(context, "debug", "Listing projects", extra={"count": len(catalog)})
        return catalog

    def _push_ui_command(
        project_id: str,
        command_type: str,
        payload: dict[str, Any] | None = None,
        session_id: str = DEFAULT_SESSION_ID,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Queue a command (navigate, open file, invoke action) for the UI bridge."""

        command = ui_store.enqueue_command(
            project_id, {"type": command_type, "payload": payload}, session_id
        )
        _emit_log(
            context,
            "info",
            "Queued UI command",
            extra={"project_id": project_id, "command_id": command.id, "command_type": command.type},
        )
        return command.to_payload()

    def _ui_snapshot(
        project_id: str, session_id: str = DEFAULT_SESSION_ID, context: Context | None = None
    ) -> dict[str, Any]:
        """Return the last UI snapshot pushed by the bridge, or an empty object."""

        snapshot = ui_store.get_snapshot(project_id, session_id)
        _emit_log(context, "debug", "Fetched UI snapshot", extra={"project_id": project_id})
        return snapshot or {}

    def _push_ui_snapshot(
        project_id: str,
        snapshot: dict[str, Any],
        session_id: str = DEFAULT_SESSION_ID,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Store the bridge's latest UI snapshot; ``workingBranch`` feeds the commit gate."""

        stored = ui_store.update_snapshot(project_id, snapshot, session_id)
        _emit_log(context, "debug", "Stored UI snapshot", extra={"project_id": project_id, "session_id": stored["sessionId"]})
        return stored

    def _fetch_ui_commands(
        project_id: str,
        after_id: int = 0,
        session_id: str = DEFAULT_SESSION_ID,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return queued UI commands with ids greater than ``after_id``."""

        commands = ui_store.list_commands(project_id, session_id, after_id=after_id)
        _emit_log(context, "debug", "Fetched UI commands", extra={"project_id": project_id, "count": len(commands)})
        return [command.to_payload() for command in commands]

    def _ack_ui_commands(
        project_id: str,
        up_to_id: int,
        session_id: str = DEFAULT_SESSION_ID,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Drop every queued command whose id is at most ``up_to_id``."""

        pruned = ui_store.acknowledge(project_id, up_to_id, session_id)
        remaining = len(ui_store.list_commands(project_id, session_id))
        _emit_log(context, "debug", "Acknowledged UI commands", extra={"project_id": project_id, "pruned": pruned})
        return {"pruned": pruned, "remaining": remaining}

    async def _run_tests(
        project_id: str,
        source: str = RunOrigin.AUTOMATION.value,
        auto_commit: bool = False,
        return_to_commits: bool = False,
        staged_files: list[dict[str, Any] | str] | None = None,
        branch_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run the frontend and backend test suites under auto-fix supervision."""

        active = _require_coordinator(project_id)
        try:
            origin = RunOrigin(source)
        except ValueError as exc:
            raise ValueError("source must be 'user' or 'automation'") from exc
        staged = _parse_staged(staged_files)
        results = await active.run_tests(
            source=origin,
            auto_commit=auto_commit,
            return_to_commits=return_to_commits,
            staged_files=staged,
            branch_name=branch_name,
        )
        summary = {
            kind.tag: (
                {"skipped": True, "reason": result.reason}
                if isinstance(result, SkipResult)
                else result.to_payload()
            )
            for kind, result in results.items()
        }
        _emit_log(context, "info", "Started test run", extra={"project_id": project_id, "source": origin.value})
        return {"projectId": project_id, "source": origin.value, "jobs": summary}

    async def _fix_with_ai(project_id: str, context: Context | None = None) -> dict[str, Any]:
        """Ask the fixing agent to repair the currently failing suites."""

        outcome = await _require_coordinator(project_id).fix_with_ai()
        _emit_log(context, "info", "Fix with AI requested", extra={"project_id": project_id, "verdict": outcome.verdict.value})
        return {
            "verdict": outcome.verdict.value,
            "detail": outcome.detail,
            "request": outcome.request.to_event() if outcome.request else None,
        }

    async def _halt_autofix(project_id: str, context: Context | None = None) -> dict[str, Any]:
        """Stop the active auto-fix session for a project."""

        outcome = await _require_coordinator(project_id).halt()
        _emit_log(context, "info", "Auto-fix halted by user", extra={"project_id": project_id})
        return {
            "verdict": outcome.verdict.value,
            "message": outcome.prompt.message if outcome.prompt else None,
        }

    tool_start_job = server.tool(
        name="start_job",
        description=(
            "Start an automation job for a project. job_type is '<scope>:<kind>', e.g. "
            "'frontend:test', 'backend:install', 'git:status'. Test jobs on a style-only "
            "staged set are skipped, and test jobs are skipped when staged_files carry timestamps "
            "older than the last successful run."
        ),
    )(_start_job)

    tool_job_status = server.tool(
        name="job_status",
        description="Fetch the latest status, logs and coverage summary of a job.",
    )(_job_status)

    tool_list_jobs = server.tool(
        name="list_jobs",
        description="List every job known for a project, including ones restored after a restart.",
    )(_list_jobs)

    tool_cancel_job = server.tool(
        name="cancel_job",
        description="Cancel a running job; its process tree is terminated.",
    )(_cancel_job)

    tool_cancel_tests = server.tool(
        name="cancel_tests",
        description="Cancel the running frontend and backend test suites; no prompt is raised for them.",
    )(_cancel_tests)

    tool_reclaim = server.tool(
        name="reclaim_ports",
        description=(
            "Free the ports of a project (or an explicit port list) by terminating the "
            "processes bound to them. Host-reserved ports are never touched."
        ),
        annotations={"destructiveHint": True},
    )(_reclaim_ports)

    tool_list_projects = server.tool(
        name="list_projects",
        description="List configured projects with frameworks, ports and test settings.",
    )(_list_projects)

    tool_push_ui_command = server.tool(
        name="push_ui_command",
        description="Queue a UI command for the automation bridge of a project session.",
    )(_push_ui_command)

    tool_ui_snapshot = server.tool(
        name="ui_snapshot",
        description="Read the latest UI snapshot pushed by the automation bridge.",
    )(_ui_snapshot)

    tool_push_ui_snapshot = server.tool(
        name="push_ui_snapshot",
        description=(
            "Store the UI snapshot reported by the automation bridge. A 'workingBranch' "
            "entry ({name, status, stagedFiles}) is what the commit flow reads."
        ),
    )(_push_ui_snapshot)

    tool_fetch_ui_commands = server.tool(
        name="fetch_ui_commands",
        description="Fetch queued UI commands newer than after_id for a project session.",
    )(_fetch_ui_commands)

    tool_ack_ui_commands = server.tool(
        name="ack_ui_commands",
        description="Acknowledge UI commands up to and including up_to_id so they are not delivered again.",
    )(_ack_ui_commands)

    tool_run_tests = server.tool(
        name="run_tests",
        description=(
            "Run the frontend and backend test suites for a project. Automation-sourced "
            "runs that fail trigger bounded auto-fix requests."
        ),
    )(_run_tests)

    tool_fix_with_ai = server.tool(
        name="fix_with_ai",
        description="Start a fresh auto-fix session for the currently failing test suites.",
    )(_fix_with_ai)

    tool_halt_autofix = server.tool(
        name="halt_autofix",
        description="Halt the active auto-fix session so no further fixes are dispatched.",
    )(_halt_autofix)

    return ToolHandles(
        start_job=tool_start_job,
        job_status=tool_job_status,
        list_jobs=tool_list_jobs,
        cancel_job=tool_cancel_job,
        cancel_tests=tool_cancel_tests,
        reclaim_ports=tool_reclaim,
        list_projects=tool_list_projects,
        push_ui_command=tool_push_ui_command,
        ui_snapshot=tool_ui_snapshot,
        push_ui_snapshot=tool_push_ui_snapshot,
        fetch_ui_commands=tool_fetch_ui_commands,
        ack_ui_commands=tool_ack_ui_commands,
        run_tests=tool_run_tests,
        fix_with_ai=tool_fix_with_ai,
        halt_autofix=tool_halt_autofix,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP request context when present, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
