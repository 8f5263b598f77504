"""Event storage for job snapshots and auto-fix history."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import AutoFixEventRecord, JobSnapshotRecord

__all__ = [
    "AutoFixEventRecord",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "JobSnapshotRecord",
]
