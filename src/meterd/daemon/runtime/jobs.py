"""Queue of asynchronous jobs whose cost is settled by the retry/refund driver."""

from __future__ import annotations

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from ..db.connection import is_unique_violation, transaction
from ..errors import DuplicateOperation, JobNotFound
from ..ledger.models import dumps_or_none, loads_or_none, utc_now_iso
from ..ledger.sql import SqlStore


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"


RUNNABLE_STATUSES = (JobStatus.PENDING, JobStatus.ERROR)
FINISHED_STATUSES = (JobStatus.SUCCESS, JobStatus.FAILED)


@dataclass
class UsageJob:
    id: str
    user_id: str
    kind: str
    operation_id: str
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    input: Any = None
    output: Any = None
    actual_cost: int | None = None
    error_message: str | None = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    finalized_at: str | None = None

    @property
    def retryable(self) -> bool:
        return self.attempts < self.max_attempts

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data

    @classmethod
    def from_row(cls, row) -> "UsageJob":
        return cls(
            id=row["job_id"],
            user_id=row["user_id"],
            kind=row["kind"],
            operation_id=row["operation_id"],
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            input=loads_or_none(row["input"]),
            output=loads_or_none(row["output"]),
            actual_cost=None if row["actual_cost"] is None else int(row["actual_cost"]),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finalized_at=row["finalized_at"],
        )


def new_job(user_id: str, kind: str, operation_id: str, input: Any = None, max_attempts: int = 3) -> UsageJob:
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts!r}")
    return UsageJob(
        id=uuid.uuid4().hex,
        user_id=user_id,
        kind=kind,
        operation_id=operation_id,
        input=input,
        max_attempts=max_attempts,
    )


class JobStore(ABC):
    @abstractmethod
    def create_job(self, job: UsageJob) -> str:
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> UsageJob:
        """Raises JobNotFound."""

    @abstractmethod
    def get_by_operation(self, operation_id: str) -> UsageJob | None:
        ...

    @abstractmethod
    def fetch_runnable(self, limit: int = 10) -> list[UsageJob]:
        """Pending jobs first, then ``error`` jobs that still have attempts left."""

    @abstractmethod
    def claim(self, job_id: str) -> UsageJob | None:
        """Atomically move a runnable job to ``processing`` and count the attempt.

        Returns None when another worker claimed it first.
        """

    # record_success and record_failure only apply to the attempt that is still
    # running: the job must be ``processing`` with ``attempts == attempt``.
    # They return False when a stall sweep or another worker got there first.

    @abstractmethod
    def record_success(self, job_id: str, attempt: int, actual_cost: int, output: Any = None) -> bool:
        ...

    @abstractmethod
    def record_failure(self, job_id: str, attempt: int, error_message: str, retryable: bool) -> bool:
        """``error`` when retryable, ``failed`` otherwise."""

    @abstractmethod
    def mark_finalized(self, job_id: str) -> None:
        """Record that the job's operation has been finalized. Idempotent."""

    @abstractmethod
    def list_stalled(self, older_than: str, limit: int = 100) -> list[UsageJob]:
        """``processing`` jobs not updated since ``older_than``."""

    @abstractmethod
    def list_terminal(self, limit: int = 100) -> list[UsageJob]:
        """Finished jobs not yet marked finalized, oldest first."""


class MemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: dict[str, UsageJob] = {}
        self._lock = threading.Lock()

    def create_job(self, job: UsageJob) -> str:
        with self._lock:
            if job.id in self._jobs:
                raise DuplicateOperation(job.id)
            self._jobs[job.id] = copy.deepcopy(job)
        return job.id

    def _get(self, job_id: str) -> UsageJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def get_job(self, job_id: str) -> UsageJob:
        with self._lock:
            return copy.deepcopy(self._get(job_id))

    def get_by_operation(self, operation_id: str) -> UsageJob | None:
        with self._lock:
            for job in self._jobs.values():
                if job.operation_id == operation_id:
                    return copy.deepcopy(job)
        return None

    def fetch_runnable(self, limit: int = 10) -> list[UsageJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
            pending = [j for j in jobs if j.status == JobStatus.PENDING]
            retry = [j for j in jobs if j.status == JobStatus.ERROR and j.retryable]
            return [copy.deepcopy(j) for j in (pending + retry)[:limit]]

    def claim(self, job_id: str) -> UsageJob | None:
        with self._lock:
            job = self._get(job_id)
            if job.status not in RUNNABLE_STATUSES or not job.retryable:
                return None
            job.status = JobStatus.PROCESSING
            job.attempts += 1
            job.updated_at = utc_now_iso()
            return copy.deepcopy(job)

    def _running(self, job_id: str, attempt: int) -> UsageJob | None:
        job = self._get(job_id)
        if job.status != JobStatus.PROCESSING or job.attempts != attempt:
            return None
        return job

    def record_success(self, job_id: str, attempt: int, actual_cost: int, output: Any = None) -> bool:
        with self._lock:
            job = self._running(job_id, attempt)
            if job is None:
                return False
            job.status = JobStatus.SUCCESS
            job.actual_cost = actual_cost
            job.output = copy.deepcopy(output)
            job.error_message = None
            job.updated_at = utc_now_iso()
            return True

    def record_failure(self, job_id: str, attempt: int, error_message: str, retryable: bool) -> bool:
        with self._lock:
            job = self._running(job_id, attempt)
            if job is None:
                return False
            job.status = JobStatus.ERROR if retryable else JobStatus.FAILED
            job.error_message = error_message
            job.updated_at = utc_now_iso()
            return True

    def mark_finalized(self, job_id: str) -> None:
        with self._lock:
            job = self._get(job_id)
            if job.finalized_at is None:
                job.finalized_at = utc_now_iso()

    def list_stalled(self, older_than: str, limit: int = 100) -> list[UsageJob]:
        with self._lock:
            jobs = [
                copy.deepcopy(j) for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING and j.updated_at < older_than
            ]
        return sorted(jobs, key=lambda j: j.updated_at)[:limit]

    def list_terminal(self, limit: int = 100) -> list[UsageJob]:
        with self._lock:
            jobs = [
                copy.deepcopy(j) for j in self._jobs.values()
                if j.status in FINISHED_STATUSES and j.finalized_at is None
            ]
        return sorted(jobs, key=lambda j: j.updated_at)[:limit]


_JOB_COLUMNS = (
    "job_id, user_id, kind, status, attempts, max_attempts, input, output, actual_cost, "
    "operation_id, error_message, created_at, updated_at, finalized_at"
)


class SqlJobStore(SqlStore, JobStore):
    def create_job(self, job: UsageJob) -> str:
        def _create(conn) -> str:
            with transaction(conn):
                conn.execute(
                    f"INSERT INTO usage_jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.id,
                        job.user_id,
                        job.kind,
                        str(job.status),
                        job.attempts,
                        job.max_attempts,
                        dumps_or_none(job.input),
                        dumps_or_none(job.output),
                        job.actual_cost,
                        job.operation_id,
                        job.error_message,
                        job.created_at,
                        job.updated_at,
                        job.finalized_at,
                    ),
                )
            return job.id

        try:
            return self._run(_create, "job.create")
        except Exception as exc:
            if is_unique_violation(exc):
                raise DuplicateOperation(job.operation_id) from exc
            raise

    @staticmethod
    def _fetch(conn, job_id: str) -> UsageJob:
        row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM usage_jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not row:
            raise JobNotFound(job_id)
        return UsageJob.from_row(row)

    def get_job(self, job_id: str) -> UsageJob:
        return self._run(lambda conn: self._fetch(conn, job_id), "job.get")

    def get_by_operation(self, operation_id: str) -> UsageJob | None:
        def _get(conn) -> UsageJob | None:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM usage_jobs WHERE operation_id = ?", (operation_id,)
            ).fetchone()
            return UsageJob.from_row(row) if row else None

        return self._run(_get, "job.get_by_operation")

    def _select(self, where: str, params: tuple, order: str, limit: int, label: str) -> list[UsageJob]:
        sql = f"SELECT {_JOB_COLUMNS} FROM usage_jobs WHERE {where} ORDER BY {order} LIMIT ?"
        return self._run(
            lambda conn: [UsageJob.from_row(r) for r in conn.execute(sql, params + (int(limit),)).fetchall()],
            label,
        )

    def fetch_runnable(self, limit: int = 10) -> list[UsageJob]:
        jobs = self._select("status = 'pending'", (), "created_at ASC", limit, "job.fetch_pending")
        if len(jobs) < limit:
            jobs += self._select(
                "status = 'error' AND attempts < max_attempts",
                (),
                "created_at ASC",
                limit - len(jobs),
                "job.fetch_retryable",
            )
        return jobs

    def claim(self, job_id: str) -> UsageJob | None:
        def _claim(conn) -> UsageJob | None:
            with transaction(conn):
                cur = conn.execute(
                    """
                    UPDATE usage_jobs
                    SET status = 'processing', attempts = attempts + 1, updated_at = ?
                    WHERE job_id = ? AND status IN ('pending', 'error') AND attempts < max_attempts
                    """,
                    (utc_now_iso(), job_id),
                )
                job = self._fetch(conn, job_id)
                return job if cur.rowcount == 1 else None

        return self._run(_claim, "job.claim")

    def _finish_attempt(self, job_id: str, attempt: int, assignments: str, params: tuple, label: str) -> bool:
        def _apply(conn) -> bool:
            with transaction(conn):
                cur = conn.execute(
                    f"""
                    UPDATE usage_jobs SET {assignments}, updated_at = ?
                    WHERE job_id = ? AND status = 'processing' AND attempts = ?
                    """,
                    params + (utc_now_iso(), job_id, attempt),
                )
                if cur.rowcount == 0:
                    self._fetch(conn, job_id)  # JobNotFound for an unknown id
                    return False
                return True

        return self._run(_apply, label)

    def record_success(self, job_id: str, attempt: int, actual_cost: int, output: Any = None) -> bool:
        return self._finish_attempt(
            job_id,
            attempt,
            "status = 'success', actual_cost = ?, output = ?, error_message = NULL",
            (actual_cost, dumps_or_none(output)),
            "job.record_success",
        )

    def record_failure(self, job_id: str, attempt: int, error_message: str, retryable: bool) -> bool:
        status = JobStatus.ERROR if retryable else JobStatus.FAILED
        return self._finish_attempt(
            job_id,
            attempt,
            "status = ?, error_message = ?",
            (str(status), error_message),
            "job.record_failure",
        )

    def mark_finalized(self, job_id: str) -> None:
        def _mark(conn) -> None:
            with transaction(conn):
                cur = conn.execute(
                    "UPDATE usage_jobs SET finalized_at = ? WHERE job_id = ? AND finalized_at IS NULL",
                    (utc_now_iso(), job_id),
                )
                if cur.rowcount == 0:
                    self._fetch(conn, job_id)

        self._run(_mark, "job.mark_finalized")

    def list_stalled(self, older_than: str, limit: int = 100) -> list[UsageJob]:
        return self._select(
            "status = 'processing' AND updated_at < ?", (older_than,), "updated_at ASC", limit, "job.list_stalled"
        )

    def list_terminal(self, limit: int = 100) -> list[UsageJob]:
        return self._select(
            "status IN ('success', 'failed') AND finalized_at IS NULL",
            (),
            "updated_at ASC",
            limit,
            "job.list_terminal",
        )
