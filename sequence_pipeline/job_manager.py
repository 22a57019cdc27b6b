from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable
from uuid import uuid4

from .errors import JobNotFoundError
from .models import (
    COMPLETED,
    ERROR,
    PENDING,
    PROCESSING,
    STOPPED,
    GenerationRequest,
    JobRecord,
    SchedulerMetrics,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobManager:
    """In-memory job registry. Readers always receive copies."""

    def __init__(self, max_retained_jobs: int = 100, retention_hours: int = 24):
        self._lock = threading.RLock()
        self._jobs: dict[str, JobRecord] = {}
        self.max_retained_jobs = max(1, max_retained_jobs)
        self.retention = timedelta(hours=max(retention_hours, 1))

        # Monotonic for the process lifetime; eviction never touches these.
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._stopped = 0
        self._retries = 0
        self._processing_seconds = 0.0

    def create_job(self, request: GenerationRequest) -> JobRecord:
        with self._lock:
            now = _utcnow()
            record = JobRecord(id=str(uuid4()), request=request, submitted_at=now, updated_at=now)
            self._jobs[record.id] = record
            self._total += 1
            return copy.deepcopy(record)

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            record = self._jobs.get(job_id)
            return copy.deepcopy(record) if record else None

    def require(self, job_id: str) -> JobRecord:
        record = self.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def list_jobs(self, limit: int | None = None) -> list[JobRecord]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda x: x.submitted_at, reverse=True)
            if limit is not None:
                jobs = jobs[: max(1, limit)]
            return [copy.deepcopy(job) for job in jobs]

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == PENDING)

    def _mutate(self, job_id: str, mutator: Callable[[JobRecord], None]) -> JobRecord:
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None:
                raise JobNotFoundError(job_id)
            if record.is_terminal:
                logger.debug("Ignoring update to terminal job %s (%s)", job_id, record.status)
                return copy.deepcopy(record)
            mutator(record)
            record.updated_at = _utcnow()
            return copy.deepcopy(record)

    def update(self, job_id: str, **kwargs) -> JobRecord:
        def apply(record: JobRecord) -> None:
            for k, v in kwargs.items():
                setattr(record, k, v)

        return self._mutate(job_id, apply)

    def set_processing(self, job_id: str) -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.status = PROCESSING
            record.started_at = _utcnow()

        return self._mutate(job_id, apply)

    def set_plan(self, job_id: str, units_total: int, skipped: list[str]) -> JobRecord:
        return self.update(job_id, units_total=units_total, skipped=list(skipped))

    def record_progress(
        self,
        job_id: str,
        model_id: str,
        material_id: str,
        frame_index: int,
        units_completed: int,
        estimated_completion: datetime | None,
    ) -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.current_model = model_id
            record.current_material = material_id
            record.current_frame = frame_index
            record.units_completed = units_completed
            if record.units_total:
                record.progress = max(0, min(int(units_completed * 100 / record.units_total), 100))
            record.estimated_completion = estimated_completion

        return self._mutate(job_id, apply)

    def mark_sequence_completed(self, job_id: str, sequence_id: str) -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.completed_sequences.append(sequence_id)

        return self._mutate(job_id, apply)

    def record_retry(self) -> None:
        with self._lock:
            self._retries += 1

    def set_completed(self, job_id: str) -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.status = COMPLETED
            record.progress = 100
            record.current_model = None
            record.current_material = None
            record.current_frame = None
            record.completed_at = _utcnow()
            record.estimated_completion = record.completed_at
            self._completed += 1
            if record.started_at is not None:
                self._processing_seconds += (record.completed_at - record.started_at).total_seconds()

        return self._mutate(job_id, apply)

    def set_failed(self, job_id: str, error: str) -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.status = ERROR
            record.error = error
            record.completed_at = _utcnow()
            self._failed += 1

        return self._mutate(job_id, apply)

    def set_stopped(self, job_id: str, reason: str = "Cancelled by user") -> JobRecord:
        def apply(record: JobRecord) -> None:
            record.status = STOPPED
            record.error = reason
            record.cancel_requested = True
            record.completed_at = _utcnow()
            self._stopped += 1

        return self._mutate(job_id, apply)

    def request_cancel(self, job_id: str) -> JobRecord | None:
        """Flag a job for cancellation. Returns None when the job is unknown or finished."""
        with self._lock:
            record = self._jobs.get(job_id)
            if record is None or record.is_terminal:
                return None
            if record.status == PENDING:
                return self.set_stopped(job_id, reason="Cancelled before start")
            return self.update(job_id, cancel_requested=True)

    def metrics(self) -> SchedulerMetrics:
        with self._lock:
            active = sum(1 for job in self._jobs.values() if job.status == PROCESSING)
            queued = sum(1 for job in self._jobs.values() if job.status == PENDING)
            return SchedulerMetrics(
                total_jobs=self._total,
                active_jobs=active,
                queue_size=queued,
                completed_jobs=self._completed,
                failed_jobs=self._failed,
                stopped_jobs=self._stopped,
                retry_count=self._retries,
                total_processing_seconds=self._processing_seconds,
                average_completion_seconds=self._processing_seconds / self._completed if self._completed else 0.0,
            )

    def cleanup_expired(self, now: datetime | None = None) -> int:
        """Drop old terminal jobs from the registry; counters are left alone."""
        cutoff = (now or _utcnow()) - self.retention
        removed = 0
        with self._lock:
            terminal = sorted(
                (job for job in self._jobs.values() if job.is_terminal),
                key=lambda x: x.updated_at,
            )
            overflow = max(0, len(terminal) - self.max_retained_jobs)
            for index, record in enumerate(terminal):
                if index < overflow or record.updated_at < cutoff:
                    self._jobs.pop(record.id, None)
                    removed += 1
        if removed:
            logger.info("Evicted %d finished jobs from the registry", removed)
        return removed


ProgressCallback = Callable[[dict], None]
