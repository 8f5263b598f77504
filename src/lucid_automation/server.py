"""FastMCP server bootstrap for the automation core."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .autofix.loop import AutoFixController
from .autofix.plan import RemediationRequest
from .bridge.state import UiStateStore
from .config import AutomationSettings, get_settings
from .coordinator import RunCoordinator
from .gate.flow import CommitGate
from .gate.readiness import BranchState
from .jobs.api import HttpAutomationApi
from .jobs.local import LocalJobBackend
from .jobs.manager import JobLifecycleManager
from .jobs.models import JobStatus
from .processes.reclaim import PortReclaimer
from .projects import ProjectLoadError, ProjectLoader
from .prompts import Prompt
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools

RESTART_FAILURE_MESSAGE = "Server restarted before the job completed"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the automation server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def recover_interrupted_jobs(
    store: ChromaStore,
    backend: LocalJobBackend,
    reclaimer: PortReclaimer,
    projects: ProjectLoader,
    settings: AutomationSettings,
) -> list[dict[str, Any]]:
    """Fail jobs a previous server run left non-terminal and reclaim their projects' ports."""

    actions: list[dict[str, Any]] = []
    interrupted_projects: list[str] = []
    now = datetime.now(timezone.utc)

    for job in store.replay_jobs():
        if job.is_final:
            backend.restore(job)
            continue
        failed = job.model_copy(
            update={
                "status": JobStatus.FAILED,
                "completed_at": now,
                "error": RESTART_FAILURE_MESSAGE,
            }
        )
        store.record_job(failed)
        backend.restore(failed)
        actions.append({"job_id": job.id, "project_id": job.project_id, "status": "failed"})
        if job.project_id not in interrupted_projects:
            interrupted_projects.append(job.project_id)
        logger.warning(
            "Marked interrupted job as failed",
            extra={"job_id": job.id, "project_id": job.project_id},
        )

    for project_id in interrupted_projects:
        try:
            ports = projects.get(project_id).derive_ports()
        except ProjectLoadError as exc:
            logger.warning(
                "Cannot reclaim ports for unknown project",
                extra={"project_id": project_id, "error": str(exc)},
            )
            continue
        freed = await reclaimer.reclaim_ports(
            ports,
            timeout_ms=settings.reclaim_timeout_ms,
            interval_ms=settings.reclaim_interval_ms,
        )
        actions.append({"project_id": project_id, "ports": ports, "freed": freed})

    return actions


def create_server(
    settings: Optional[AutomationSettings] = None,
    reclaimer: PortReclaimer | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with tools, resources and restart recovery."""

    settings = settings or get_settings()

    project_loader = ProjectLoader(settings.project_paths)
    reclaimer = reclaimer or PortReclaimer.from_settings(settings)
    ui_store = UiStateStore()

    chroma_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "lucid_automation",
        "error": None,
    }

    try:
        chroma_store = ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    backend = LocalJobBackend(project_loader, reclaimer=reclaimer, recorder=chroma_store)

    recovery_actions: list[dict[str, Any]] = []
    if chroma_store is not None:
        recovery_actions = _run_sync(
            recover_interrupted_jobs(chroma_store, backend, reclaimer, project_loader, settings)
        )

    manager = JobLifecycleManager.from_settings(backend, settings)
    coordinator: RunCoordinator | None = None

    def _notify(prompt: Prompt) -> None:
        if prompt.project_id:
            ui_store.enqueue_command(
                prompt.project_id, {"type": "prompt", "payload": prompt.to_payload()}
            )

    def _dispatch(request: RemediationRequest) -> None:
        session = coordinator.session if coordinator is not None else None
        if session is None:
            raise RuntimeError("No focused project to dispatch the fix request for")
        event = request.to_event()
        ui_store.enqueue_command(
            session.project_id, {"type": event["type"], "payload": event["detail"]}
        )

    def _branch_state(project_id: str) -> BranchState | None:
        snapshot = ui_store.get_snapshot(project_id)
        branch = (snapshot or {}).get("snapshot", {}) or {}
        working = branch.get("workingBranch")
        return BranchState.model_validate(working) if isinstance(working, dict) else None

    controller = AutoFixController(
        dispatch=_dispatch,
        notify=_notify,
        max_attempts=settings.autofix_max_attempts,
        recorder=chroma_store,
    )
    gate = CommitGate(
        HttpAutomationApi.from_settings(settings),
        notify=_notify,
        trunk_branch=settings.trunk_branch,
    )
    coordinator = RunCoordinator(manager, controller, gate, branch_state=_branch_state)

    server = FastMCP(
        name="Lucid Automation",
        version=__version__,
        instructions=(
            "Runs project build and test jobs, reclaims ports left by earlier runs, and "
            "supervises a bounded auto-fix loop for failing test suites. Use the tools to "
            "start and observe jobs and to exchange commands with the UI bridge."
        ),
    )

    handles = register_tools(
        server,
        backend=backend,
        manager=manager,
        reclaimer=reclaimer,
        projects=project_loader,
        settings=settings,
        ui_store=ui_store,
        coordinator=coordinator,
    )

    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            project_ids = sorted(project_loader.load_all().keys())
            project_error: str | None = None
        except ProjectLoadError as exc:
            project_ids = []
            project_error = str(exc)

        session = coordinator.session
        autofix: dict[str, Any] | None = None
        if session is not None:
            autofix = {
                "project_id": session.project_id,
                "state": session.autofix.state.value,
                "attempt": session.autofix.attempt,
                "max_attempts": session.autofix.max_attempts,
                "halt_reason": session.autofix.halt_reason.value if session.autofix.halt_reason else None,
            }

        halts: list[dict[str, Any]] = []
        storage_error = None
        if chroma_store is not None:
            try:
                halts = [
                    {
                        "project_id": record.project_id,
                        "reason": record.reason,
                        "attempts": record.attempts,
                        "recorded_at": record.recorded_at.isoformat(),
                    }
                    for record in chroma_store.list_autofix_halts()[-5:]
                ]
            except Exception as exc:  # status must still render
                storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "projects": {"count": len(project_ids), "ids": project_ids, "error": project_error},
            "ports": {
                "host_reserved": sorted(reclaimer.host_ports),
                "protected_pids": sorted(reclaimer.protected_pids),
            },
            "storage": {"chroma": chroma_metadata, "recent_halts": halts, "error": storage_error},
            "recovery": recovery_actions[-5:],
            "poll_errors": manager.poll_errors,
            "autofix": autofix,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    server.resource(
        "resource://lucid/status",
        name="lucid_status",
        description="Provides the current runtime status for the automation server.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)

    setattr(server, "project_loader", project_loader)
    setattr(server, "reclaimer", reclaimer)
    setattr(server, "job_backend", backend)
    setattr(server, "job_manager", manager)
    setattr(server, "coordinator", coordinator)
    setattr(server, "ui_store", ui_store)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "recovery_actions", recovery_actions)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the automation MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger.info(
        "Launching automation MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
            "recovered_jobs": len(getattr(server, "recovery_actions", [])),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
