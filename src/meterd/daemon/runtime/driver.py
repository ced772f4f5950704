"""Retry/refund driver: settles queued jobs against their reservations.

Polling is at-least-once. Every step here may be repeated after a crash
because ``Ledger.finalize`` only has effect on a pending operation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from ..errors import OperationNotFound
from ..ledger.models import OperationStatus, iso_seconds_ago
from ..ledger.usage import Ledger
from ..utils.config_loader import DriverSettings
from ..utils.logging_config import StructuredLogger
from .jobs import JobStatus, JobStore, UsageJob, new_job

logger = StructuredLogger(__name__)


@dataclass
class JobOutcome:
    actual_cost: int
    result: Any = None


Executor = Callable[[UsageJob], JobOutcome]


class RetryRefundDriver:
    def __init__(
        self,
        ledger: Ledger,
        jobs: JobStore,
        executors: dict[str, Executor] | None = None,
        settings: DriverSettings | None = None,
    ):
        self.ledger = ledger
        self.jobs = jobs
        self.executors: dict[str, Executor] = dict(executors or {})
        self.settings = settings or DriverSettings()

    def register(self, kind: str, executor: Executor) -> None:
        self.executors[kind] = executor

    def submit(
        self,
        user_id: str,
        kind: str,
        estimate: int,
        input: Any = None,
        max_attempts: int | None = None,
        metadata: Any = None,
    ) -> tuple[str, str]:
        """Reserve credits and enqueue the job. Returns ``(operation_id, job_id)``."""
        operation_id = self.ledger.start(user_id, kind, estimate, metadata)
        job = new_job(
            user_id,
            kind,
            operation_id,
            input=input,
            max_attempts=max_attempts or self.settings.default_max_attempts,
        )
        try:
            self.jobs.create_job(job)
        except Exception as exc:
            logger.error("Job enqueue failed; releasing reservation", operation_id=operation_id, error=str(exc))
            self.ledger.finalize(operation_id, is_refund=True, error_message=f"enqueue failed: {exc}")
            raise
        logger.info("Job submitted", job_id=job.id, operation_id=operation_id, kind=kind)
        return operation_id, job.id

    def poll_once(self) -> dict[str, int]:
        summary = {"claimed": 0, "succeeded": 0, "retried": 0, "refunded": 0}
        for candidate in self.jobs.fetch_runnable(self.settings.batch_size):
            executor = self.executors.get(candidate.kind)
            if executor is None:
                logger.debug("No executor registered", job_id=candidate.id, kind=candidate.kind)
                continue
            job = self.jobs.claim(candidate.id)
            if job is None:
                continue
            summary["claimed"] += 1

            try:
                outcome = executor(job)
                cost = outcome.actual_cost
                if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
                    raise ValueError(f"executor returned invalid actual_cost {cost!r}")
            except Exception as exc:
                refunded = self._record_failure(job, str(exc) or type(exc).__name__)
                summary["refunded" if refunded else "retried"] += 1
                continue

            if not self.jobs.record_success(job.id, job.attempts, cost, outcome.result):
                logger.warning(
                    "Job result discarded; attempt was already closed",
                    job_id=job.id,
                    operation_id=job.operation_id,
                    attempts=job.attempts,
                )
                continue
            self.ledger.finalize(job.operation_id, actual_cost=cost, result=outcome.result)
            self.jobs.mark_finalized(job.id)
            summary["succeeded"] += 1
            logger.info("Job succeeded", job_id=job.id, operation_id=job.operation_id, actual_cost=cost)
        return summary

    def _record_failure(self, job: UsageJob, message: str) -> bool:
        """Returns True when the job is out of attempts and its reservation was refunded."""
        retryable = job.attempts < job.max_attempts
        if not self.jobs.record_failure(job.id, job.attempts, message, retryable=retryable):
            logger.info("Attempt already closed; failure not recorded", job_id=job.id, attempts=job.attempts)
            return False
        if retryable:
            logger.warning(
                "Job attempt failed; will retry",
                job_id=job.id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                error=message,
            )
            return False
        logger.error(
            "Job failed permanently; refunding reservation",
            job_id=job.id,
            operation_id=job.operation_id,
            attempts=job.attempts,
            error=message,
        )
        self.ledger.finalize(job.operation_id, is_refund=True, error_message=message)
        self.jobs.mark_finalized(job.id)
        return True

    def resume_unsettled(self, limit: int = 500) -> int:
        """Finalize operations whose job finished but whose finalize never ran.

        Works through finished jobs not yet marked finalized, oldest first, so
        nothing falls out of the window however many jobs finish later.
        """
        resumed = 0
        for job in self.jobs.list_terminal(limit):
            try:
                operation = self.ledger.get_operation(job.operation_id)
            except OperationNotFound:
                logger.error("Job references a missing operation", job_id=job.id, operation_id=job.operation_id)
                continue
            if operation.status == OperationStatus.PENDING:
                if job.status == JobStatus.SUCCESS:
                    applied = self.ledger.finalize(
                        job.operation_id, actual_cost=job.actual_cost or 0, result=job.output
                    )
                else:
                    applied = self.ledger.finalize(job.operation_id, is_refund=True, error_message=job.error_message)
                resumed += int(applied)
            self.jobs.mark_finalized(job.id)
        if resumed:
            logger.info("Resumed finalization for finished jobs", count=resumed)
        return resumed

    def requeue_stalled(self) -> int:
        """Count ``processing`` jobs past the stall timeout as a failed attempt."""
        timeout = self.settings.stall_timeout_seconds
        stalled = self.jobs.list_stalled(iso_seconds_ago(timeout))
        for job in stalled:
            self._record_failure(job, f"no result after {timeout}s")
        return len(stalled)

    def run_cycle(self) -> dict[str, int]:
        summary = self.poll_once()
        summary["resumed"] = self.resume_unsettled()
        summary["stalled"] = self.requeue_stalled()
        return summary
