"""Server-side store for UI snapshots and queued UI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from ..jobs.api import RequestValidationError
from ..jobs.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


def normalize_session_id(session_id: Any) -> str:
    if not isinstance(session_id, str):
        return DEFAULT_SESSION_ID
    return session_id.strip() or DEFAULT_SESSION_ID


@dataclass(frozen=True, slots=True)
class UiCommand:
    id: int
    type: str
    created_at: datetime
    payload: Any = None
    meta: Any = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "createdAt": self.created_at.isoformat(),
            "payload": self.payload,
            "meta": self.meta,
        }


@dataclass(slots=True)
class _SessionState:
    snapshot: dict[str, Any] | None = None
    snapshot_updated_at: datetime | None = None
    commands: list[UiCommand] = field(default_factory=list)
    next_command_id: int = 1


class UiStateStore:
    """Snapshots and command queues keyed by ``(project, session)``.

    Command ids increase per session starting at 1; acknowledging an id
    prunes every command up to and including it.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or utcnow
        self._state: dict[tuple[str, str], _SessionState] = {}

    @staticmethod
    def _key(project_id: Any, session_id: Any) -> tuple[str, str]:
        if project_id is None or str(project_id).strip() == "":
            raise RequestValidationError("projectId is required")
        return str(project_id), normalize_session_id(session_id)

    def _ensure(self, project_id: Any, session_id: Any) -> _SessionState:
        key = self._key(project_id, session_id)
        return self._state.setdefault(key, _SessionState())

    def update_snapshot(
        self, project_id: str, snapshot: Mapping[str, Any], session_id: str | None = None
    ) -> dict[str, Any]:
        entry = self._ensure(project_id, session_id)
        entry.snapshot = dict(snapshot)
        entry.snapshot_updated_at = self._clock()
        return self._describe(project_id, session_id, entry)

    def get_snapshot(self, project_id: str, session_id: str | None = None) -> dict[str, Any] | None:
        entry = self._state.get(self._key(project_id, session_id))
        if entry is None or entry.snapshot is None:
            return None
        return self._describe(project_id, session_id, entry)

    def _describe(self, project_id: str, session_id: str | None, entry: _SessionState) -> dict[str, Any]:
        return {
            "projectId": str(project_id),
            "sessionId": normalize_session_id(session_id),
            "updatedAt": entry.snapshot_updated_at.isoformat() if entry.snapshot_updated_at else None,
            "snapshot": entry.snapshot,
        }

    def enqueue_command(
        self, project_id: str, command: Mapping[str, Any], session_id: str | None = None
    ) -> UiCommand:
        command_type = command.get("type") if isinstance(command, Mapping) else None
        if not isinstance(command_type, str) or not command_type.strip():
            raise RequestValidationError("command type is required")
        entry = self._ensure(project_id, session_id)
        queued = UiCommand(
            id=entry.next_command_id,
            type=command_type.strip(),
            created_at=self._clock(),
            payload=command.get("payload"),
            meta=command.get("meta"),
        )
        entry.next_command_id += 1
        entry.commands.append(queued)
        logger.debug(
            "Queued UI command",
            extra={"project_id": str(project_id), "command_id": queued.id, "command_type": queued.type},
        )
        return queued

    def list_commands(
        self, project_id: str, session_id: str | None = None, *, after_id: int = 0
    ) -> list[UiCommand]:
        entry = self._state.get(self._key(project_id, session_id))
        if entry is None:
            return []
        return [command for command in entry.commands if command.id > after_id]

    def acknowledge(
        self, project_id: str, up_to_id: Any, session_id: str | None = None
    ) -> int:
        """Drop commands with ``id <= up_to_id``; returns how many were pruned."""

        entry = self._state.get(self._key(project_id, session_id))
        try:
            limit = int(up_to_id)
        except (TypeError, ValueError):
            return 0
        if entry is None or limit <= 0:
            return 0
        before = len(entry.commands)
        entry.commands = [command for command in entry.commands if command.id > limit]
        return before - len(entry.commands)

    def session_ids(self, project_id: str) -> list[str]:
        return sorted({session for project, session in self._state if project == str(project_id)})


class LocalBridgeTransport:
    """Expose a ``UiStateStore`` through the same calls ``HttpAutomationApi`` offers."""

    def __init__(self, store: UiStateStore) -> None:
        self._store = store

    async def post_ui_snapshot(
        self, project_id: str, session_id: str, snapshot: Mapping[str, Any]
    ) -> dict[str, Any]:
        self._store.update_snapshot(project_id, snapshot, session_id)
        return {"success": True}

    async def fetch_ui_commands(self, project_id: str, session_id: str) -> list[dict[str, Any]]:
        return [command.to_payload() for command in self._store.list_commands(project_id, session_id)]

    async def ack_ui_commands(
        self, project_id: str, session_id: str, command_ids: Iterable[int]
    ) -> dict[str, Any]:
        ids = [int(value) for value in command_ids]
        pruned = self._store.acknowledge(project_id, max(ids) if ids else 0, session_id)
        return {"success": True, "pruned": pruned}


__all__ = [
    "DEFAULT_SESSION_ID",
    "LocalBridgeTransport",
    "UiCommand",
    "UiStateStore",
    "normalize_session_id",
]
