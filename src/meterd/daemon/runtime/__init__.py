"""Background runtime: job queue, retry/refund driver, reconciliation."""

from .driver import Executor, JobOutcome, RetryRefundDriver
from .jobs import JobStatus, JobStore, MemoryJobStore, SqlJobStore, UsageJob, new_job
from .recovery import reconcile

__all__ = [
    "Executor",
    "JobOutcome",
    "JobStatus",
    "JobStore",
    "MemoryJobStore",
    "RetryRefundDriver",
    "SqlJobStore",
    "UsageJob",
    "new_job",
    "reconcile",
]
