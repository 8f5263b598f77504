"""Job records exchanged with the project server."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

COVERAGE_METRICS: tuple[str, ...] = ("lines", "statements", "functions", "branches")


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps as UTC so they compare with aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobScope(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    GIT = "git"


class JobType(Enum):
    """Closed catalogue of job kinds; scope and label travel as data."""

    FRONTEND_INSTALL = (JobScope.FRONTEND, "install", "Install frontend dependencies")
    FRONTEND_LINT = (JobScope.FRONTEND, "lint", "Lint frontend")
    FRONTEND_TEST = (JobScope.FRONTEND, "test", "Frontend tests")
    FRONTEND_ADD_PACKAGE = (JobScope.FRONTEND, "add-package", "Add frontend package")
    FRONTEND_REMOVE_PACKAGE = (JobScope.FRONTEND, "remove-package", "Remove frontend package")
    BACKEND_INSTALL = (JobScope.BACKEND, "install", "Install backend dependencies")
    BACKEND_LINT = (JobScope.BACKEND, "lint", "Lint backend")
    BACKEND_TEST = (JobScope.BACKEND, "test", "Backend tests")
    BACKEND_ADD_PACKAGE = (JobScope.BACKEND, "add-package", "Add backend package")
    BACKEND_REMOVE_PACKAGE = (JobScope.BACKEND, "remove-package", "Remove backend package")
    GIT_STATUS = (JobScope.GIT, "status", "Git status")
    GIT_PULL = (JobScope.GIT, "pull", "Git pull")

    def __init__(self, scope: JobScope, kind: str, label: str) -> None:
        self.scope = scope
        self.kind = kind
        self.label = label

    @property
    def tag(self) -> str:
        return f"{self.scope.value}:{self.kind}"

    @property
    def is_test(self) -> bool:
        return self.kind == "test"

    @classmethod
    def from_tag(cls, tag: str) -> "JobType":
        normalized = tag.strip().lower()
        for member in cls:
            if member.tag == normalized:
                return member
        raise ValueError(f"Unknown job type '{tag}'")

    @classmethod
    def coerce(cls, value: "JobType | str") -> "JobType":
        if isinstance(value, JobType):
            return value
        if isinstance(value, str):
            return cls.from_tag(value)
        raise TypeError("Job type must be a JobType or a '<scope>:<kind>' string")


TEST_JOB_TYPES: tuple[JobType, ...] = (JobType.FRONTEND_TEST, JobType.BACKEND_TEST)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    STARTING = "starting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in _FINAL_STATUSES


_FINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )


class JobLogEntry(_WireModel):
    stream: str = "stdout"
    message: str
    timestamp: datetime | None = None


class UncoveredLines(_WireModel):
    workspace: str | None = None
    file: str
    lines: list[int] = Field(default_factory=list)

    @property
    def location(self) -> str:
        path = f"{self.workspace}/{self.file}" if self.workspace else self.file
        return f"{path}:{','.join(str(line) for line in sorted(self.lines))}"


class CoverageSummary(_WireModel):
    """Coverage totals and thresholds for a finished test job."""

    totals: dict[str, float] = Field(default_factory=dict)
    thresholds: dict[str, float] = Field(default_factory=dict)
    uncovered_lines: list[UncoveredLines] = Field(default_factory=list)
    passed: bool | None = None
    message: str | None = None

    @field_validator("totals", "thresholds", mode="before")
    @classmethod
    def _flatten_metrics(cls, value: Any) -> dict[str, float]:
        if not value:
            return {}
        flattened: dict[str, float] = {}
        for metric, entry in dict(value).items():
            if isinstance(entry, dict):
                entry = entry.get("pct")
            if entry is None:
                continue
            flattened[str(metric)] = float(entry)
        return flattened

    def metrics_below_threshold(self) -> list[str]:
        failing: list[str] = []
        for metric, threshold in self.thresholds.items():
            actual = self.totals.get(metric)
            if actual is None or actual < threshold:
                failing.append(metric)
        return failing

    @property
    def gate_failed(self) -> bool:
        if self.passed is not None:
            return not self.passed
        return bool(self.metrics_below_threshold())


class JobSummary(_WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow"
    )

    exit_code: int | None = None
    coverage: CoverageSummary | None = None
    error: str | None = None


class Job(_WireModel):
    """Immutable snapshot of one job as last reported by the server."""

    id: str
    type: JobType
    project_id: str
    status: JobStatus
    display_name: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    cwd: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    logs: list[JobLogEntry] = Field(default_factory=list)
    summary: JobSummary | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, value: Any) -> JobType:
        return JobType.coerce(value)

    @field_validator("project_id", "id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("Job identifiers must not be empty")
        return str(value)

    @field_validator("created_at", "started_at", "completed_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    @field_serializer("type")
    def _serialize_type(self, value: JobType) -> str:
        return value.tag

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    @property
    def coverage(self) -> CoverageSummary | None:
        return self.summary.coverage if self.summary else None

    @property
    def result_key(self) -> str:
        stamp = self.created_at.isoformat() if self.created_at else ""
        return f"{self.id}@{stamp}"

    def trimmed(self, limit: int) -> "Job":
        if len(self.logs) <= limit:
            return self
        return self.model_copy(update={"logs": self.logs[-limit:]})

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StagedFile(_WireModel):
    path: str
    timestamp: datetime | None = None
    source: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)


_STYLESHEET_SUFFIXES = (".css", ".scss", ".sass", ".less")


def is_stylesheet_path(path: str) -> bool:
    return path.strip().lower().endswith(_STYLESHEET_SUFFIXES)


def is_style_only(staged: Iterable[StagedFile | str]) -> bool:
    """True when there is at least one staged path and every one is a stylesheet."""

    paths = [item.path if isinstance(item, StagedFile) else str(item) for item in staged]
    return bool(paths) and all(is_stylesheet_path(path) for path in paths)


@dataclass(frozen=True, slots=True)
class SkipResult:
    """Server answer that a requested run is unnecessary."""

    reason: str
    branch: str | None = None
    indicator: str | None = None
    skipped: bool = True


__all__ = [
    "COVERAGE_METRICS",
    "CoverageSummary",
    "Job",
    "JobLogEntry",
    "JobScope",
    "JobStatus",
    "JobSummary",
    "JobType",
    "SkipResult",
    "StagedFile",
    "TEST_JOB_TYPES",
    "UncoveredLines",
    "ensure_utc",
    "is_style_only",
    "is_stylesheet_path",
    "utcnow",
]
