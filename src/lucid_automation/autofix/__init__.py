"""Bounded self-correction loop for failing test suites."""

from .fingerprint import (
    FailureFingerprint,
    FailureKind,
    build_fingerprint,
    classify_job,
    extract_failing_test_ids,
    normalize_excerpt,
)
from .loop import (
    AutoFixController,
    AutoFixSession,
    HaltReason,
    LoopOutcome,
    LoopState,
    ProjectSession,
    RunIntent,
    RunOrigin,
    Verdict,
)
from .plan import FailingSuite, RemediationRequest, build_failure_context, build_fix_plan

__all__ = [
    "AutoFixController",
    "AutoFixSession",
    "FailingSuite",
    "FailureFingerprint",
    "FailureKind",
    "HaltReason",
    "LoopOutcome",
    "LoopState",
    "ProjectSession",
    "RemediationRequest",
    "RunIntent",
    "RunOrigin",
    "Verdict",
    "build_failure_context",
    "build_fingerprint",
    "build_fix_plan",
    "classify_job",
    "extract_failing_test_ids",
    "normalize_excerpt",
]
