"""Failure classification and fingerprints for finished test jobs.

A fingerprint is what the auto-fix loop compares between attempts to
decide whether a remediation made any observable difference. It is built
per failing job type from the sorted failing test ids, a normalized
excerpt of the failure output, and, for coverage-gate failures, the
sorted uncovered locations. Normalization strips ANSI colors, directory
prefixes, hex addresses and every number so that timestamps, durations
and shifted line numbers do not disguise a repeated failure.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping

from ..jobs.models import Job, JobStatus, JobType
from ..processes.utils import strip_ansi

LOG_WINDOW = 200
EXCERPT_LINES = 20
EXCERPT_CHARS = 2000

_VITEST_FAIL = re.compile(r"^\s*FAIL\s+(.+?)\s*$")
_PYTEST_FAILED = re.compile(r"^\s*FAILED\s+(\S+)")
_DURATION_SUFFIX = re.compile(r"\s*\(\s*\d+(?:\.\d+)?\s*m?s\s*\)\s*$")
_ERROR_HINT = re.compile(
    r"(error|fail|assert|expected|received|exception|traceback|coverage|✗|×)",
    re.IGNORECASE,
)
_DIRECTORY_PREFIX = re.compile(r"(?<![\w.])(?:[A-Za-z]:)?(?:[\w.@+~-]*[\\/])+")
_HEX = re.compile(r"\b0x[0-9a-f]+\b", re.IGNORECASE)
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_WHITESPACE = re.compile(r"\s+")


class FailureKind(str, Enum):
    PASSED = "passed"
    TEST_FAILURE = "test-failure"
    COVERAGE_GATE = "coverage-gate"


FailureClassifier = Callable[[Job], FailureKind]


def _recent_lines(job: Job, window: int = LOG_WINDOW) -> list[str]:
    lines: list[str] = []
    for entry in job.logs[-window:]:
        lines.extend(strip_ansi(entry.message or "").splitlines())
    return lines


def extract_failing_test_ids(job: Job) -> list[str]:
    """Sorted ids from ``FAIL <file>`` and ``FAILED <nodeid>`` lines in recent logs."""

    found: set[str] = set()
    for line in _recent_lines(job):
        match = _VITEST_FAIL.match(line)
        if match:
            identifier = _DURATION_SUFFIX.sub("", match.group(1)).strip()
        else:
            match = _PYTEST_FAILED.match(line)
            if not match:
                continue
            identifier = match.group(1).strip()
        if identifier:
            found.add(identifier)
    return sorted(found)


def classify_job(job: Job) -> FailureKind:
    """Default classifier: coverage-gate failures are told apart from test failures."""

    coverage = job.coverage
    gate_failed = coverage is not None and coverage.gate_failed
    if job.status is JobStatus.SUCCEEDED:
        return FailureKind.COVERAGE_GATE if gate_failed else FailureKind.PASSED
    if gate_failed and not extract_failing_test_ids(job):
        return FailureKind.COVERAGE_GATE
    return FailureKind.TEST_FAILURE


def normalize_excerpt(text: str) -> str:
    cleaned = strip_ansi(text or "")
    cleaned = _DIRECTORY_PREFIX.sub("", cleaned)
    cleaned = _HEX.sub("0x#", cleaned)
    cleaned = _NUMBER.sub("#", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def failure_excerpt(job: Job) -> str:
    candidates: list[str] = []
    if job.error:
        candidates.append(job.error)
    if job.summary is not None and job.summary.error:
        candidates.append(job.summary.error)
    candidates.extend(line for line in _recent_lines(job) if _ERROR_HINT.search(line))

    seen: dict[str, None] = {}
    for candidate in candidates:
        normalized = normalize_excerpt(candidate)
        if normalized:
            seen.setdefault(normalized, None)
        if len(seen) >= EXCERPT_LINES:
            break
    return "\n".join(seen)[:EXCERPT_CHARS]


@dataclass(frozen=True, slots=True)
class JobFailureSignature:
    job_type: str
    kind: FailureKind
    failing_tests: tuple[str, ...]
    excerpt: str
    uncovered: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class FailureFingerprint:
    """Signatures of every failing tracked job, ordered by job type."""

    signatures: tuple[JobFailureSignature, ...]

    @property
    def digest(self) -> str:
        payload = json.dumps([asdict(signature) for signature in self.signatures], sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @property
    def failing_tests(self) -> list[str]:
        return [test for signature in self.signatures for test in signature.failing_tests]


def build_signature(job: Job, kind: FailureKind) -> JobFailureSignature:
    uncovered: tuple[str, ...] = ()
    if kind is FailureKind.COVERAGE_GATE and job.coverage is not None:
        uncovered = tuple(sorted(item.location for item in job.coverage.uncovered_lines))
    return JobFailureSignature(
        job_type=job.type.tag,
        kind=kind,
        failing_tests=tuple(extract_failing_test_ids(job)),
        excerpt=failure_excerpt(job),
        uncovered=uncovered,
    )


def build_fingerprint(
    failures: Mapping[JobType, Job] | Iterable[tuple[Job, FailureKind]],
    classifier: FailureClassifier = classify_job,
) -> FailureFingerprint:
    if isinstance(failures, Mapping):
        pairs = [(job, classifier(job)) for job in failures.values()]
    else:
        pairs = list(failures)
    signatures = [
        build_signature(job, kind) for job, kind in pairs if kind is not FailureKind.PASSED
    ]
    signatures.sort(key=lambda signature: signature.job_type)
    return FailureFingerprint(signatures=tuple(signatures))


__all__ = [
    "FailureClassifier",
    "FailureFingerprint",
    "FailureKind",
    "JobFailureSignature",
    "build_fingerprint",
    "build_signature",
    "classify_job",
    "extract_failing_test_ids",
    "failure_excerpt",
    "normalize_excerpt",
]
