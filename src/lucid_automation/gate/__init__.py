"""Commit and merge gating."""

from .flow import CommitGate, GateFlow, GateOutcome, is_stale_proof_error
from .readiness import (
    BranchState,
    GateSignal,
    Readiness,
    build_proof_failure_message,
    commit_ready,
    describe_merge_blocker,
    evaluate_readiness,
    is_passing_test_status,
    is_style_only,
    merge_ready,
)

__all__ = [
    "BranchState",
    "CommitGate",
    "GateFlow",
    "GateOutcome",
    "GateSignal",
    "Readiness",
    "build_proof_failure_message",
    "commit_ready",
    "describe_merge_blocker",
    "evaluate_readiness",
    "is_passing_test_status",
    "is_stale_proof_error",
    "is_style_only",
    "merge_ready",
]
