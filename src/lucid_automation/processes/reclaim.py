"""Port and process reclamation between project runs."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Iterable

import psutil

from ..config import DEFAULT_HOST_PORTS, AutomationSettings
from .runner import CommandNotFoundError, CommandRunner

logger = logging.getLogger(__name__)

PidLookup = Callable[[int], "Iterable[int] | Awaitable[Iterable[int]]"]
PidTerminator = Callable[[int], Any]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _coerce_int(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _unique_ints(values: Iterable[Any] | None) -> list[int]:
    seen: dict[int, None] = {}
    for value in values or []:
        number = _coerce_int(value)
        if number is not None:
            seen.setdefault(number, None)
    return list(seen)


class PortReclaimer:
    """Terminate process trees left bound to project ports by earlier runs.

    Host-reserved ports are never scanned and always count as free. Protected
    pids (this process, its parent and any configured extras) are never
    signalled; attempts to do so log a warning and return.
    """

    def __init__(
        self,
        *,
        host_ports: Iterable[int] = DEFAULT_HOST_PORTS,
        protected_pids: Iterable[int] = (),
        host_pid: int | None = None,
        runner: CommandRunner | None = None,
        force_delay: float = 1.0,
    ) -> None:
        self._host_pid = host_pid if host_pid is not None else os.getpid()
        protected = {self._host_pid, *_unique_ints(protected_pids)}
        parent = os.getppid()
        if parent > 1:
            protected.add(parent)
        self._protected_pids = frozenset(protected)
        self._host_ports = frozenset(_unique_ints(host_ports))
        self._runner = runner or CommandRunner()
        self._force_delay = force_delay

    @classmethod
    def from_settings(cls, settings: AutomationSettings, **kwargs: Any) -> "PortReclaimer":
        return cls(
            host_ports=settings.host_ports,
            protected_pids=settings.protected_pids,
            **kwargs,
        )

    @property
    def host_ports(self) -> frozenset[int]:
        return self._host_ports

    @property
    def protected_pids(self) -> frozenset[int]:
        return self._protected_pids

    def is_reserved_port(self, port: int) -> bool:
        return port in self._host_ports

    def is_protected_pid(self, pid: int) -> bool:
        return pid in self._protected_pids

    def _warn_protected(self, pid: int, context: str) -> None:
        logger.warning(
            "Skipping protected PID %s (%s)", pid, context, extra={"pid": pid, "context": context}
        )

    async def kill_process_tree(self, pid: int, *, force_delay: float | None = None) -> None:
        """Send SIGTERM to ``pid`` and its descendants, then SIGKILL any survivors."""

        target = _coerce_int(pid)
        if target is None:
            return
        if self.is_protected_pid(target):
            self._warn_protected(target, "kill_process_tree")
            return

        try:
            root = psutil.Process(target)
            children = root.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        except psutil.AccessDenied:
            logger.warning("Access denied while inspecting process tree", extra={"pid": target})
            return

        victims: list[psutil.Process] = []
        for proc in [*children, root]:
            if self.is_protected_pid(proc.pid):
                self._warn_protected(proc.pid, "kill_process_tree:child")
                continue
            victims.append(proc)

        for proc in victims:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.debug("Access denied sending SIGTERM", extra={"pid": proc.pid})

        delay = self._force_delay if force_delay is None else force_delay
        loop = asyncio.get_running_loop()
        _, alive = await loop.run_in_executor(
            None, functools.partial(psutil.wait_procs, victims, timeout=delay)
        )
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

    def _scan_connections(self, port: int) -> list[int]:
        pids: set[int] = set()
        for conn in psutil.net_connections(kind="inet"):
            if conn.pid and conn.laddr and conn.laddr.port == port:
                pids.add(conn.pid)
        return sorted(pids)

    async def _scan_with_tools(self, port: int) -> list[int]:
        lookups = (
            ("lsof", ["-t", f"-i:{port}"]),
            ("fuser", [f"{port}/tcp"]),
        )
        for command, args in lookups:
            try:
                result = await self._runner.run(command, args)
            except CommandNotFoundError:
                continue
            output = f"{result.stdout} {result.stderr}".replace(f"{port}/tcp:", " ")
            return _unique_ints(token for token in output.split() if token.isdigit())
        return []

    async def find_pids(self, port: int) -> list[int]:
        """Return pids holding a local socket on ``port``."""

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._scan_connections, port)
        except psutil.AccessDenied:
            return await self._scan_with_tools(port)

    async def terminate_pid_with_retry(
        self,
        pid: int,
        *,
        attempts: int = 2,
        interval_ms: int = 250,
        wait_for_exit_ms: int | None = None,
    ) -> bool:
        """Kill ``pid``'s tree up to ``attempts`` times; report whether it exited."""

        target = _coerce_int(pid)
        if target is None:
            return True
        if self.is_protected_pid(target):
            self._warn_protected(target, "terminate_pid_with_retry")
            return False

        wait_ms = interval_ms * 4 if wait_for_exit_ms is None else wait_for_exit_ms
        for _ in range(max(1, attempts)):
            await self.kill_process_tree(target, force_delay=wait_ms / 1000)
            if not psutil.pid_exists(target):
                return True
            await asyncio.sleep(interval_ms / 1000)
        return not psutil.pid_exists(target)

    async def wait_for_ports_to_free(
        self,
        ports: Iterable[int],
        *,
        timeout_ms: int,
        interval_ms: int,
        find_pids: PidLookup | None = None,
        terminate_pid: PidTerminator | None = None,
    ) -> bool:
        """Drain every non-reserved port concurrently until free or ``timeout_ms`` elapses."""

        targets = [port for port in _unique_ints(ports) if not self.is_reserved_port(port)]
        if not targets:
            return True

        lookup = find_pids or self.find_pids
        terminate = terminate_pid or functools.partial(
            self.terminate_pid_with_retry, attempts=2, interval_ms=interval_ms
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000

        results = await asyncio.gather(
            *(
                self._drain_port(port, lookup, terminate, deadline, interval_ms / 1000)
                for port in targets
            )
        )
        return all(results)

    async def _drain_port(
        self,
        port: int,
        lookup: PidLookup,
        terminate: PidTerminator,
        deadline: float,
        interval: float,
    ) -> bool:
        loop = asyncio.get_running_loop()
        while True:
            occupants: list[int] | None
            try:
                found = _unique_ints(await _resolve(lookup(port)))
                occupants = [pid for pid in found if not self.is_protected_pid(pid)]
            except Exception as exc:
                logger.debug("PID lookup failed", extra={"port": port, "error": str(exc)})
                occupants = None

            if occupants == []:
                return True

            for pid in occupants or []:
                try:
                    await _resolve(terminate(pid))
                except Exception as exc:
                    logger.debug(
                        "PID termination failed",
                        extra={"port": port, "pid": pid, "error": str(exc)},
                    )

            if loop.time() >= deadline:
                logger.warning("Port still occupied after timeout", extra={"port": port})
                return False
            await asyncio.sleep(interval)

    async def ensure_ports_freed(self, ports: Iterable[int], *, force_delay: float | None = None) -> None:
        """Single kill pass over the occupants of each non-reserved port."""

        async def _free(port: int) -> None:
            try:
                pids = await self.find_pids(port)
            except Exception as exc:
                logger.debug("PID lookup failed", extra={"port": port, "error": str(exc)})
                return
            for pid in pids:
                if self.is_protected_pid(pid):
                    continue
                await self.kill_process_tree(pid, force_delay=force_delay)

        pending: list[Awaitable[None]] = []
        for port in _unique_ints(ports):
            if self.is_reserved_port(port):
                logger.warning("Skipping host-reserved port %s", port, extra={"port": port})
                continue
            pending.append(_free(port))
        if pending:
            await asyncio.gather(*pending)

    async def reclaim_ports(
        self,
        ports: Iterable[int],
        *,
        timeout_ms: int,
        interval_ms: int,
    ) -> bool:
        """Kill current occupants, then wait until the ports are observed free."""

        port_list = _unique_ints(ports)
        await self.ensure_ports_freed(port_list, force_delay=interval_ms * 4 / 1000)
        freed = await self.wait_for_ports_to_free(
            port_list, timeout_ms=timeout_ms, interval_ms=interval_ms
        )
        logger.info("Port reclamation finished", extra={"ports": port_list, "freed": freed})
        return freed


__all__ = ["PidLookup", "PidTerminator", "PortReclaimer"]
