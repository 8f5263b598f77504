"""HTTP client for the project server's job, branch and UI endpoints."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence
from urllib.parse import quote

import httpx

from ..config import AutomationSettings

logger = logging.getLogger(__name__)


class AutomationApiError(RuntimeError):
    """Base class for errors reported by or on the way to the project server."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = dict(payload or {})


class TransportError(AutomationApiError):
    """Connection failures, timeouts and 5xx answers; safe to retry."""


class RequestValidationError(AutomationApiError):
    """Bad ids or missing fields; never retried."""


class DomainBlockedError(AutomationApiError):
    """The server refused the operation for a domain reason it explains."""


class JobApi(Protocol):
    async def start_job(
        self, project_id: str, job_type: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        ...

    async def get_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        ...

    async def cancel_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        ...

    async def list_jobs(self, project_id: str) -> dict[str, Any]:
        ...


class BranchApi(Protocol):
    async def commit_branch(
        self, project_id: str, branch: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        ...

    async def record_test_proof(
        self, project_id: str, branch: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        ...


class HttpAutomationApi:
    """Async client over ``httpx`` that maps responses onto the error taxonomy."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client = client

    @classmethod
    def from_settings(cls, settings: AutomationSettings, **kwargs: Any) -> "HttpAutomationApi":
        return cls(settings.server_url, timeout=settings.request_timeout, **kwargs)

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpAutomationApi":
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        fallback: str,
        json: Any = None,
        params: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        client = self._ensure_client()
        try:
            response = await client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{fallback}: request timed out") from exc
        except httpx.TransportError as exc:
            logger.debug("Request failed", extra={"path": path, "error": str(exc)})
            raise TransportError(f"{fallback}: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        status = response.status_code
        message = data.get("error") or data.get("message") or fallback
        if status >= 500:
            raise TransportError(message, status_code=status, payload=data)
        if status in (400, 404, 422):
            raise RequestValidationError(message, status_code=status, payload=data)
        if status >= 400 or data.get("success") is False:
            raise DomainBlockedError(message, status_code=status, payload=data)
        return data

    @staticmethod
    def _project_path(project_id: str) -> str:
        return f"/api/projects/{quote(str(project_id), safe='')}"

    async def start_job(
        self, project_id: str, job_type: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self._project_path(project_id)}/jobs",
            json={"type": job_type, "payload": dict(payload or {})},
            fallback="Failed to start automation job",
        )

    async def get_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"{self._project_path(project_id)}/jobs/{quote(str(job_id), safe='')}",
            fallback="Failed to fetch job",
        )

    async def cancel_job(self, project_id: str, job_id: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self._project_path(project_id)}/jobs/{quote(str(job_id), safe='')}/cancel",
            fallback="Failed to cancel job",
        )

    async def list_jobs(self, project_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"{self._project_path(project_id)}/jobs", fallback="Failed to list jobs"
        )

    async def commit_branch(
        self, project_id: str, branch: str, payload: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self._project_path(project_id)}/branches/{quote(branch, safe='')}/commit",
            json=dict(payload or {}),
            fallback="Failed to commit staged changes",
        )

    async def record_test_proof(
        self, project_id: str, branch: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self._project_path(project_id)}/branches/{quote(branch, safe='')}/tests/proof",
            json=dict(payload),
            fallback="Failed to record test proof",
        )

    async def post_ui_snapshot(
        self, project_id: str, session_id: str, snapshot: Mapping[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/agent/ui/snapshot",
            json={**dict(snapshot), "projectId": project_id, "sessionId": session_id},
            fallback="Failed to update UI snapshot",
        )

    async def fetch_ui_commands(self, project_id: str, session_id: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            "/api/agent/ui/commands",
            params={"projectId": project_id, "sessionId": session_id},
            fallback="Failed to list UI commands",
        )
        commands = data.get("commands")
        return list(commands) if isinstance(commands, list) else []

    async def ack_ui_commands(
        self, project_id: str, session_id: str, command_ids: Sequence[int]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            "/api/agent/ui/commands/ack",
            json={
                "projectId": project_id,
                "sessionId": session_id,
                "commandIds": list(command_ids),
                "upToId": max(command_ids) if command_ids else None,
            },
            fallback="Failed to acknowledge UI commands",
        )


__all__ = [
    "AutomationApiError",
    "BranchApi",
    "DomainBlockedError",
    "HttpAutomationApi",
    "JobApi",
    "RequestValidationError",
    "TransportError",
]
