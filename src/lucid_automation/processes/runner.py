"""Async runner for build and test commands."""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

from .utils import sanitize_environment

LineHandler = Callable[[str, str], None]

_STREAM_LIMIT = 1024 * 1024


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class CommandRunnerError(RuntimeError):
    """Base class for command runner errors."""


class CommandNotFoundError(CommandRunnerError):
    """Raised when a command executable cannot be located."""


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of a one-shot command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class RunningCommand:
    """Handle on a spawned child process whose output is consumed line by line."""

    def __init__(self, process: asyncio.subprocess.Process, args: Sequence[str]) -> None:
        self._process = process
        self._args = tuple(args)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def args(self) -> tuple[str, ...]:
        return self._args

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def stream(self, on_line: LineHandler) -> int:
        """Forward every stdout/stderr line to ``on_line`` and return the exit code."""

        async def _pump(reader: asyncio.StreamReader | None, name: str) -> None:
            if reader is None:
                return
            while True:
                try:
                    raw = await reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as exc:
                    if exc.partial:
                        on_line(name, _decode(exc.partial))
                    break
                except asyncio.LimitOverrunError as exc:
                    # A line longer than the buffer limit is forwarded in chunks.
                    raw = await reader.read(max(exc.consumed, 1))
                    if not raw:
                        break
                on_line(name, _decode(raw))

        await asyncio.gather(
            _pump(self._process.stdout, "stdout"),
            _pump(self._process.stderr, "stderr"),
        )
        return await self._process.wait()

    async def wait(self) -> int:
        return await self._process.wait()


class CommandRunner:
    """Spawn project commands asynchronously with a sanitized environment."""

    def __init__(self, *, env: Mapping[str, str] | None = None) -> None:
        self._env = dict(env or {})

    @staticmethod
    def resolve_executable(command: str) -> str:
        candidate = Path(command)
        if candidate.is_absolute():
            if candidate.exists() and candidate.is_file():
                return str(candidate)
            raise CommandNotFoundError(f"Executable not found at {candidate}")

        binary = shutil.which(command)
        if binary is None:
            raise CommandNotFoundError(f"Executable '{command}' not found on PATH")
        return binary

    def _environment(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        merged = dict(self._env)
        if extra:
            merged.update(extra)
        return sanitize_environment(merged)

    async def start(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> RunningCommand:
        cmd = [self.resolve_executable(command), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._environment(env),
            limit=_STREAM_LIMIT,
        )
        return RunningCommand(process, cmd)

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        cwd: str | os.PathLike[str] | None = None,
    ) -> CommandResult:
        cmd = [self.resolve_executable(command), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._environment(None),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "LineHandler",
    "RunningCommand",
]
