"""Chroma-based event store for job snapshots and auto-fix events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from pydantic import ValidationError

from ..jobs.models import Job
from .models import AutoFixEventRecord, JobSnapshotRecord

JOB_SNAPSHOT_EVENT = "job_snapshot"
AUTOFIX_EVENT_TYPES = ("autofix_dispatch", "autofix_halt")


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The part of the Chroma collection API the store relies on."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _where(filters: Mapping[str, Any] | None) -> dict[str, Any] | None:
    clauses = {key: value for key, value in (filters or {}).items() if value is not None}
    if not clauses:
        return None
    if len(clauses) == 1:
        return dict(clauses)
    return {"$and": [{key: value} for key, value in clauses.items()]}


def _scalar_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts scalars.
    return {
        key: value
        for key, value in metadata.items()
        if isinstance(value, (str, int, float, bool))
    }


class ChromaStore:
    """Persist job snapshots and auto-fix events via ChromaDB."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "lucid_automation",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install lucid-automation[persistence]"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: Mapping[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(_scalar_metadata(metadata))

        collection.add(documents=[document], metadatas=[record_metadata], ids=[event_id])

        return ChromaEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=_where(filters))
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def record_job(self, job: Job) -> JobSnapshotRecord:
        payload = job.to_payload()
        event = self.record_event(
            stream_id=f"job::{job.id}",
            event_type=JOB_SNAPSHOT_EVENT,
            body=payload,
            metadata={
                "job_id": job.id,
                "project_id": job.project_id,
                "job_type": job.type.tag,
                "status": job.status.value,
            },
        )
        return JobSnapshotRecord(
            job_id=job.id,
            project_id=job.project_id,
            job_type=job.type.tag,
            status=job.status.value,
            recorded_at=event.timestamp,
            payload=payload,
        )

    def list_job_snapshots(
        self, *, project_id: str | None = None, job_id: str | None = None
    ) -> list[JobSnapshotRecord]:
        events = self.search_events(
            filters={"event_type": JOB_SNAPSHOT_EVENT, "project_id": project_id, "job_id": job_id}
        )
        return [
            JobSnapshotRecord(
                job_id=event.metadata.get("job_id", ""),
                project_id=event.metadata.get("project_id", ""),
                job_type=event.metadata.get("job_type", ""),
                status=event.metadata.get("status", "unknown"),
                recorded_at=event.timestamp,
                payload=json.loads(event.document),
            )
            for event in events
        ]

    def replay_jobs(self, project_id: str | None = None) -> list[Job]:
        """Latest recorded snapshot of every job, oldest first."""

        latest: dict[str, JobSnapshotRecord] = {}
        for record in self.list_job_snapshots(project_id=project_id):
            latest[record.job_id] = record
        jobs: list[Job] = []
        for record in latest.values():
            try:
                jobs.append(Job.model_validate(record.payload))
            except ValidationError:
                continue
        return jobs

    def record_autofix_event(
        self, *, project_id: str, event_type: str, body: Mapping[str, Any]
    ) -> AutoFixEventRecord:
        event = self.record_event(
            stream_id=f"autofix::{project_id}",
            event_type=event_type,
            body=dict(body),
            metadata={"project_id": project_id, **body},
        )
        return self._autofix_record(event)

    def _autofix_record(self, event: ChromaEvent) -> AutoFixEventRecord:
        doc = json.loads(event.document)
        attempts = doc.get("attempts", doc.get("attempt"))
        return AutoFixEventRecord(
            project_id=event.metadata.get("project_id", ""),
            event_type=event.event_type,
            recorded_at=event.timestamp,
            reason=doc.get("reason"),
            attempts=attempts if isinstance(attempts, int) else None,
            metadata={key: value for key, value in doc.items() if key not in {"reason", "attempts"}},
        )

    def list_autofix_events(
        self, *, project_id: str | None = None, event_type: str | None = None
    ) -> list[AutoFixEventRecord]:
        events = self.search_events(filters={"project_id": project_id, "event_type": event_type})
        return [
            self._autofix_record(event)
            for event in events
            if event.event_type in AUTOFIX_EVENT_TYPES
        ]

    def list_autofix_halts(self, project_id: str | None = None) -> list[AutoFixEventRecord]:
        return self.list_autofix_events(project_id=project_id, event_type="autofix_halt")


__all__ = [
    "AUTOFIX_EVENT_TYPES",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "JOB_SNAPSHOT_EVENT",
]
