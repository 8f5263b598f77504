"""Job records, the server client, and lifecycle tracking."""

from .api import (
    AutomationApiError,
    BranchApi,
    DomainBlockedError,
    HttpAutomationApi,
    JobApi,
    RequestValidationError,
    TransportError,
)
from .local import JobDefinition, LocalJobBackend, build_job_definition
from .manager import JobLifecycleManager, should_run_test
from .models import (
    TEST_JOB_TYPES,
    CoverageSummary,
    Job,
    JobLogEntry,
    JobStatus,
    JobSummary,
    JobType,
    SkipResult,
    StagedFile,
    UncoveredLines,
)

__all__ = [
    "AutomationApiError",
    "BranchApi",
    "CoverageSummary",
    "DomainBlockedError",
    "HttpAutomationApi",
    "Job",
    "JobApi",
    "JobDefinition",
    "JobLifecycleManager",
    "JobLogEntry",
    "JobStatus",
    "JobSummary",
    "JobType",
    "LocalJobBackend",
    "RequestValidationError",
    "SkipResult",
    "StagedFile",
    "TEST_JOB_TYPES",
    "TransportError",
    "UncoveredLines",
    "build_job_definition",
    "should_run_test",
]
