"""
In-memory tracking for long-running import and export jobs.
"""
from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from record_transfer.api.schemas.shared import (
    ImportCounts,
    ImportProgress,
    JobStatus,
    RowErrorDetail,
    TransferJob,
)
from record_transfer.domain.imports.executor import CancellationToken

FINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """Thread-safe job store. Each job owns a cancellation token."""

    def __init__(self) -> None:
        self._jobs: Dict[str, TransferJob] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._lock = threading.Lock()

    def create_job(self, kind: str, entity: Optional[str] = None) -> TransferJob:
        now = _now()
        job = TransferJob(id=str(uuid.uuid4()), kind=kind, entity=entity, created_at=now, updated_at=now)
        with self._lock:
            self._jobs[job.id] = job
            self._tokens[job.id] = CancellationToken()
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[TransferJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, limit: int = 50, offset: int = 0) -> List[TransferJob]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda job: job.created_at, reverse=True)
            return [job.model_copy(deep=True) for job in jobs[offset:offset + limit]]

    def count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def token(self, job_id: str) -> CancellationToken:
        with self._lock:
            return self._tokens[job_id]

    def update_job(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        counts: Optional[ImportCounts] = None,
        progress: Optional[ImportProgress] = None,
        errors: Optional[List[RowErrorDetail]] = None,
        error_message: Optional[str] = None,
        result_metadata: Optional[Dict[str, Any]] = None,
    ) -> TransferJob:
        """Apply a partial update. Jobs in a final status only accept metadata."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            update: Dict[str, Any] = {"updated_at": _now()}
            final = job.status in FINAL_STATUSES
            if status is not None and not final:
                update["status"] = status
                if status in FINAL_STATUSES:
                    update["completed_at"] = update["updated_at"]
            if counts is not None and not final:
                update["counts"] = counts.model_copy()
            if progress is not None and not final:
                update["progress"] = progress.model_copy()
            if errors is not None:
                update["errors"] = list(errors)
            if error_message is not None:
                update["error_message"] = error_message
            if result_metadata is not None:
                update["result_metadata"] = {**job.result_metadata, **result_metadata}
            job = job.model_copy(update=update)
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    def cancel_job(self, job_id: str) -> TransferJob:
        """Request cancellation. The running job stops at its next row or page boundary."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if job.status in FINAL_STATUSES:
                return job.model_copy(deep=True)
            self._tokens[job_id].cancel()
            if job.status == JobStatus.QUEUED:
                now = _now()
                job = job.model_copy(update={"status": JobStatus.CANCELLED, "updated_at": now, "completed_at": now})
                self._jobs[job_id] = job
            return job.model_copy(deep=True)


_registry = JobRegistry()


def get_job_registry() -> JobRegistry:
    return _registry
