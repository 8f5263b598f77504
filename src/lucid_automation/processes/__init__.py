"""Child process orchestration and port reclamation."""

from .reclaim import PortReclaimer
from .runner import (
    CommandNotFoundError,
    CommandResult,
    CommandRunner,
    CommandRunnerError,
    RunningCommand,
)

__all__ = [
    "CommandNotFoundError",
    "CommandResult",
    "CommandRunner",
    "CommandRunnerError",
    "PortReclaimer",
    "RunningCommand",
]
