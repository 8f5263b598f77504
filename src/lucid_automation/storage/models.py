"""Records reconstructed from the event store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class JobSnapshotRecord:
    job_id: str
    project_id: str
    job_type: str
    status: str
    recorded_at: datetime
    payload: dict[str, Any]


@dataclass(slots=True)
class AutoFixEventRecord:
    project_id: str
    event_type: str
    recorded_at: datetime
    reason: str | None
    attempts: int | None
    metadata: dict[str, Any]


__all__ = ["AutoFixEventRecord", "JobSnapshotRecord"]
