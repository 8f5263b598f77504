"""Utility helpers for managed child processes."""

from __future__ import annotations

import os
import re
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def strip_ansi(text: str) -> str:
    """Remove terminal color sequences from a line of process output."""

    return _ANSI_PATTERN.sub("", text)


__all__ = ["sanitize_environment", "strip_ansi"]
