from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from lucid_automation.jobs import Job, JobStatus, JobType
from lucid_automation.storage import ChromaStore, ChromaUnavailableError


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            filtered = [record for record in filtered if _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _store(tmp_path: Path) -> ChromaStore:
    return ChromaStore(
        tmp_path,
        client_factory=lambda: StubClient(),
        clock=lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def _job(job_id: str, status: JobStatus, project_id: str = "demo") -> Job:
    return Job(
        id=job_id,
        type=JobType.FRONTEND_TEST,
        project_id=project_id,
        status=status,
        created_at=datetime.fromisoformat("2025-01-01T00:00:00+00:00"),
    )


def test_record_event_sequences_per_stream(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first = store.record_event(
        stream_id="job::1", event_type="note", body={"message": "started"}, metadata={"level": "INFO", "tags": ["x"]}
    )
    second = store.record_event(stream_id="job::1", event_type="note", body="B")
    other = store.record_event(stream_id="job::2", event_type="note", body="C")

    assert [first.metadata["sequence"], second.metadata["sequence"], other.metadata["sequence"]] == [1, 2, 1]
    assert first.document == '{"message": "started"}'
    assert first.metadata["level"] == "INFO"
    assert "tags" not in first.metadata


def test_search_filters_and_query(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_event(stream_id="s", event_type="note", body="Investigate auth", metadata={"project_id": "demo"})
    store.record_event(stream_id="s", event_type="note", body="Fix logging", metadata={"project_id": "demo"})
    store.record_event(stream_id="s", event_type="other", body="auth again", metadata={"project_id": "shop"})

    assert [event.document for event in store.search_events("auth")] == ["Investigate auth", "auth again"]
    filtered = store.search_events(filters={"event_type": "note", "project_id": "demo"})
    assert [event.document for event in filtered] == ["Investigate auth", "Fix logging"]
    assert len(store.search_events(filters={"project_id": None}, limit=2)) == 2


def test_replay_returns_latest_snapshot_per_job(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_job(_job("job-1", JobStatus.RUNNING))
    store.record_job(_job("job-1", JobStatus.SUCCEEDED))
    record = store.record_job(_job("job-2", JobStatus.RUNNING))
    store.record_job(_job("job-3", JobStatus.FAILED, project_id="shop"))

    assert record.job_type == "frontend:test"
    assert record.payload["projectId"] == "demo"

    replayed = {job.id: job.status for job in store.replay_jobs("demo")}
    assert replayed == {"job-1": JobStatus.SUCCEEDED, "job-2": JobStatus.RUNNING}
    assert len(store.list_job_snapshots(job_id="job-1")) == 2
    assert len(store.replay_jobs()) == 3


def test_autofix_events_and_halts(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_autofix_event(
        project_id="demo", event_type="autofix_dispatch", body={"attempt": 1, "origin": "automation", "fingerprint": None}
    )
    halt = store.record_autofix_event(
        project_id="demo", event_type="autofix_halt", body={"reason": "repeated-failure", "attempts": 2, "message": "stop"}
    )
    store.record_autofix_event(project_id="shop", event_type="autofix_halt", body={"reason": "user", "attempts": 0})

    assert halt.reason == "repeated-failure"
    assert halt.attempts == 2
    assert halt.metadata == {"message": "stop"}

    events = store.list_autofix_events(project_id="demo")
    assert [event.event_type for event in events] == ["autofix_dispatch", "autofix_halt"]
    assert events[0].attempts == 1
    assert sorted(event.project_id for event in store.list_autofix_halts()) == ["demo", "shop"]


def test_client_factory_errors_propagate(tmp_path: Path) -> None:
    def unavailable():
        raise ChromaUnavailableError("chromadb package is not installed")

    store = ChromaStore(tmp_path, client_factory=unavailable)

    with pytest.raises(ChromaUnavailableError):
        store.ping()
