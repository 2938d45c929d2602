"""Resumable historical recompute jobs.

A recompute job walks every stored conversion at or after ``from_date`` in
ascending conversion id order and writes a new computation version for one
model. The job's cursor (the last conversion id handled) is checkpointed
after every conversion, so a cancelled or failed job resumes where it
stopped and a crash costs at most one conversion of rework.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from touchcredit.attribution.config import AttributionModelConfig, ProcessingConfig
from touchcredit.attribution.exceptions import (
    InvalidParameters,
    NotFound,
    internal_error_payload,
)
from touchcredit.attribution.processor import ConversionProcessor
from touchcredit.attribution.schema import ModelType, ensure_utc, parse_timestamp
from touchcredit.attribution.storage import ConversionStore, JobStore
from touchcredit.attribution.workers import DEFAULT_MAX_ATTEMPTS, build_retrying

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


class JobStatus(str, Enum):
    """Lifecycle of a recompute job."""

    PENDING = "pending"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_finished(self) -> bool:
        return self in (JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class RecomputeJob:
    """State and progress of a recompute job."""

    job_id: str
    model_type: ModelType
    parameters: dict[str, Any]
    from_date: datetime
    status: JobStatus = JobStatus.PENDING
    cursor: str | None = None
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    error: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def model_config(self) -> AttributionModelConfig:
        """Rebuild the model config this job computes with."""
        return AttributionModelConfig(model_type=self.model_type, **self.parameters).validate()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "model_type": self.model_type.value,
            "parameters": dict(self.parameters),
            "from_date": self.from_date.isoformat(),
            "status": self.status.value,
            "cursor": self.cursor,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecomputeJob:
        def _optional_ts(name: str) -> datetime | None:
            value = data.get(name)
            return parse_timestamp(value, name) if value else None

        return cls(
            job_id=data["job_id"],
            model_type=ModelType.parse(data["model_type"]),
            parameters=dict(data.get("parameters") or {}),
            from_date=parse_timestamp(data["from_date"], "from_date"),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            cursor=data.get("cursor"),
            processed=int(data.get("processed") or 0),
            skipped=int(data.get("skipped") or 0),
            failed=int(data.get("failed") or 0),
            error=data.get("error"),
            created_at=_optional_ts("created_at") or datetime.now(UTC),
            started_at=_optional_ts("started_at"),
            completed_at=_optional_ts("completed_at"),
        )


class RecomputeJobRunner:
    """Creates, runs, cancels and resumes recompute jobs.

    Example:
        >>> runner = RecomputeJobRunner(processor, conversions, jobs)
        >>> job = runner.create(model_config, from_date)
        >>> runner.start(job.job_id)
        >>> runner.cancel(job.job_id)
        >>> runner.resume(job.job_id)
    """

    def __init__(
        self,
        processor: ConversionProcessor,
        conversion_store: ConversionStore,
        job_store: JobStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_multiplier: float = 0.5,
        max_backoff: float = 30.0,
    ):
        self.processor = processor
        self.conversion_store = conversion_store
        self.job_store = job_store
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.max_backoff = max_backoff

        # Serializes read-modify-write of job state between runner and cancel()
        self._lock = threading.RLock()
        self._threads: dict[str, threading.Thread] = {}

    def create(self, model: AttributionModelConfig, from_date: datetime) -> RecomputeJob:
        """Register a pending job for ``model`` from ``from_date`` onward.

        Raises:
            InvalidParameters: If the model parameters are out of domain.
        """
        model.validate()
        job = RecomputeJob(
            job_id=f"job-{uuid.uuid4().hex[:12]}",
            model_type=model.model_type,
            parameters=model.parameters(),
            from_date=ensure_utc(from_date),
        )
        self.job_store.save(job)
        logger.info(
            f"Created recompute job {job.job_id} for {model.model_type.value} "
            f"from {job.from_date.isoformat()}"
        )
        return job

    def get(self, job_id: str) -> RecomputeJob:
        """Return the job's current state.

        Raises:
            NotFound: If the job does not exist.
        """
        job = self.job_store.get(job_id)
        if job is None:
            raise NotFound(f"Recompute job not found: {job_id}")
        return job

    def is_active(self, job_id: str) -> bool:
        """Return True if a runner thread for the job is alive."""
        thread = self._threads.get(job_id)
        return thread is not None and thread.is_alive()

    def start(self, job_id: str) -> threading.Thread:
        """Run the job on a background thread."""
        self.get(job_id)
        with self._lock:
            thread = self._threads.get(job_id)
            if thread is not None and thread.is_alive():
                return thread
            thread = threading.Thread(
                target=self.run, args=(job_id,), name=f"recompute-{job_id}", daemon=True
            )
            self._threads[job_id] = thread
            thread.start()
        return thread

    def wait(self, job_id: str, timeout: float | None = None) -> RecomputeJob:
        """Join the job's background thread and return its state."""
        thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout=timeout)
        return self.get(job_id)

    def run(self, job_id: str) -> RecomputeJob:
        """Run the job to completion, cancellation or failure on this thread.

        Returns:
            The job's final state.
        """
        with self._lock:
            job = self.get(job_id)
            if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
                return job
            if job.status == JobStatus.CANCELLING:
                return self._finish(job, JobStatus.CANCELLED)
            job.status = JobStatus.RUNNING
            job.error = None
            job.started_at = job.started_at or datetime.now(UTC)
            self.job_store.save(job)

        config = ProcessingConfig(models=(job.model_config(),))
        retrying = build_retrying(self.max_attempts, self.backoff_multiplier, self.max_backoff)
        logger.info(f"Running recompute job {job_id} after cursor {job.cursor!r}")

        while True:
            batch = self.conversion_store.list_conversions(
                since=job.from_date, after_id=job.cursor, limit=self.batch_size
            )
            if not batch:
                break

            for conversion in batch:
                if self._cancel_requested(job_id):
                    return self._finish(self.get(job_id), JobStatus.CANCELLED)

                try:
                    report = retrying(self.processor.recompute, conversion, config, job_id)
                except Exception:
                    logger.exception(
                        f"Recompute job {job_id} failed on conversion {conversion.id}"
                    )
                    with self._lock:
                        job = self.get(job_id)
                        job.error = internal_error_payload()
                        return self._finish(job, JobStatus.FAILED)

                with self._lock:
                    job = self.get(job_id)
                    if report.is_retryable:
                        # Cursor stays on the last completed conversion
                        error = report.errors[0]
                        job.error = error.to_payload()
                        return self._finish(job, JobStatus.FAILED)
                    outcome = report.outcome(job.model_type)
                    if not report.is_success:
                        job.failed += 1
                    elif outcome is not None and not outcome.inserted:
                        job.skipped += 1
                    else:
                        job.processed += 1
                    job.cursor = conversion.id
                    self.job_store.save(job)

        with self._lock:
            job = self.get(job_id)
            if job.status == JobStatus.CANCELLING:
                return self._finish(job, JobStatus.CANCELLED)
            return self._finish(job, JobStatus.COMPLETED)

    def cancel(self, job_id: str) -> RecomputeJob:
        """Request cancellation.

        A running job stops between conversions; a pending job is cancelled
        immediately. Finished jobs are returned unchanged.
        """
        with self._lock:
            job = self.get(job_id)
            if job.status == JobStatus.RUNNING and self.is_active(job_id):
                job.status = JobStatus.CANCELLING
                self.job_store.save(job)
                logger.info(f"Cancellation requested for recompute job {job_id}")
            elif job.status in (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.CANCELLING):
                job = self._finish(job, JobStatus.CANCELLED)
        return job

    def resume(self, job_id: str, background: bool = True) -> RecomputeJob:
        """Continue a cancelled or failed job from its cursor.

        Raises:
            InvalidParameters: If the job already completed.
        """
        with self._lock:
            job = self.get(job_id)
            if job.status == JobStatus.COMPLETED:
                raise InvalidParameters(
                    f"Recompute job {job_id} already completed",
                    fields={"job_id": "already completed"},
                )
            if self.is_active(job_id):
                return job
            job.status = JobStatus.PENDING
            job.completed_at = None
            self.job_store.save(job)
            logger.info(f"Resuming recompute job {job_id} after cursor {job.cursor!r}")

        if background:
            self.start(job_id)
            return self.get(job_id)
        return self.run(job_id)

    def _cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            job = self.job_store.get(job_id)
            return job is not None and job.status in (JobStatus.CANCELLING, JobStatus.CANCELLED)

    def _finish(self, job: RecomputeJob, status: JobStatus) -> RecomputeJob:
        job.status = status
        job.completed_at = datetime.now(UTC)
        self.job_store.save(job)
        logger.info(
            f"Recompute job {job.job_id} {status.value}: processed={job.processed} "
            f"skipped={job.skipped} failed={job.failed} cursor={job.cursor!r}"
        )
        return job
