"""Client half of the UI-automation bridge."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence

from ..jobs.api import AutomationApiError
from .state import DEFAULT_SESSION_ID

logger = logging.getLogger(__name__)

SNAPSHOT_INTERVAL = 0.75
MAX_IDLE_INTERVAL = 5.0

CommandHandler = Callable[[Mapping[str, Any]], "Any | Awaitable[Any]"]
SnapshotProvider = Callable[[], Mapping[str, Any]]


class UiBridgeTransport(Protocol):
    async def post_ui_snapshot(
        self, project_id: str, session_id: str, snapshot: Mapping[str, Any]
    ) -> dict[str, Any]:
        ...

    async def fetch_ui_commands(self, project_id: str, session_id: str) -> list[dict[str, Any]]:
        ...

    async def ack_ui_commands(
        self, project_id: str, session_id: str, command_ids: Sequence[int]
    ) -> dict[str, Any]:
        ...


class UiBridge:
    """Push UI snapshots out and apply queued commands in.

    Commands are applied in id order and at most once: anything at or
    below the highest id already processed is skipped but still
    acknowledged, so redelivery after a lost ack is harmless.
    """

    def __init__(
        self,
        transport: UiBridgeTransport,
        *,
        project_id: str,
        snapshot_provider: SnapshotProvider,
        handlers: Mapping[str, CommandHandler] | None = None,
        session_id: str = DEFAULT_SESSION_ID,
        interval: float = SNAPSHOT_INTERVAL,
        max_interval: float = MAX_IDLE_INTERVAL,
    ) -> None:
        self._transport = transport
        self._project_id = project_id
        self._session_id = session_id or DEFAULT_SESSION_ID
        self._snapshot_provider = snapshot_provider
        self._handlers: dict[str, CommandHandler] = dict(handlers or {})
        self._interval = interval
        self._max_interval = max_interval
        self._current_interval = interval
        self._last_snapshot: str | None = None
        self._last_command_id = 0

    @property
    def last_command_id(self) -> int:
        return self._last_command_id

    @property
    def current_interval(self) -> float:
        return self._current_interval

    def register(self, command_type: str, handler: CommandHandler) -> None:
        self._handlers[command_type] = handler

    async def push_snapshot(self) -> bool:
        """Send the current snapshot if it changed; returns whether it was sent."""

        snapshot = dict(self._snapshot_provider())
        encoded = json.dumps(snapshot, sort_keys=True, default=str)
        if encoded == self._last_snapshot:
            return False
        await self._transport.post_ui_snapshot(self._project_id, self._session_id, snapshot)
        self._last_snapshot = encoded
        return True

    async def poll_commands(self) -> int:
        """Apply new commands and acknowledge the highest id seen; returns how many ran."""

        commands = await self._transport.fetch_ui_commands(self._project_id, self._session_id)
        if not commands:
            return 0
        ordered = sorted(
            (command for command in commands if isinstance(command.get("id"), int)),
            key=lambda command: command["id"],
        )
        processed = 0
        for command in ordered:
            if command["id"] <= self._last_command_id:
                continue
            await self._apply(command)
            self._last_command_id = command["id"]
            processed += 1
        if ordered:
            await self._transport.ack_ui_commands(
                self._project_id, self._session_id, [command["id"] for command in ordered]
            )
        return processed

    async def _apply(self, command: Mapping[str, Any]) -> None:
        handler = self._handlers.get(str(command.get("type")))
        if handler is None:
            logger.warning(
                "No handler for UI command",
                extra={"command_id": command.get("id"), "command_type": command.get("type")},
            )
            return
        try:
            result = handler(command)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("UI command handler failed", extra={"command_id": command.get("id")})

    async def tick(self) -> bool:
        """One bridge step; returns whether anything happened."""

        active = False
        try:
            active = await self.push_snapshot()
            active = bool(await self.poll_commands()) or active
        except AutomationApiError as exc:
            logger.debug("UI bridge request failed", extra={"error": exc.message})
        if active:
            self._current_interval = self._interval
        else:
            self._current_interval = min(self._current_interval * 2, self._max_interval)
        return active

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._current_interval)
            except asyncio.TimeoutError:
                continue


__all__ = [
    "CommandHandler",
    "MAX_IDLE_INTERVAL",
    "SNAPSHOT_INTERVAL",
    "SnapshotProvider",
    "UiBridge",
    "UiBridgeTransport",
]
