"""
Job submission and lifecycle management for the document pipeline.

This module is the synchronous half of the pipeline and the only writer
of job records:
- Validating submissions and creating PENDING jobs
- Publishing work messages to the queue
- Owner-scoped reads for the status and download endpoints
- The three worker-facing transitions (processing, completed, failed)
- A reconciliation sweep that re-enqueues jobs stranded in PENDING

Each transition is a single conditional update in the job database, so
no in-process lock is held around any of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from .access import Identity, check_ownership
from .database import JobDatabase, utcnow
from .errors import NotFoundError, TransientInfrastructureError, ValidationError
from .lifecycle import CompletedUpdate, FailedUpdate, JobUpdate, ProcessingUpdate
from .models import DocumentCategory, JobStatus, JobStatusResponse, JobSummary, WorkMessage
from .queue_service import QueueChannel
from .utils import derive_input_kind, retry_transient, validate_input_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """
    Snapshot of a job as stored in the job database.

    Attributes:
        id: Unique job identifier (UUID4)
        owner_id: Principal id, or the guest sentinel for anonymous jobs
        input_ref: Storage key of the uploaded source document
        input_kind: Lower-cased extension of the input, or "unknown"
        document_category: Category chosen at submission
        status: Current lifecycle status
        output_ref: Storage key of the result (COMPLETED only)
        failure_detail: Diagnostic text (FAILED only)
        created_at: Creation timestamp (UTC)
        updated_at: Last transition timestamp (UTC)
    """

    id: str
    owner_id: str
    input_ref: str
    input_kind: str
    document_category: DocumentCategory
    status: JobStatus
    created_at: datetime
    updated_at: datetime
    output_ref: Optional[str] = None
    failure_detail: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "JobRecord":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            input_ref=row["input_ref"],
            input_kind=row["input_kind"],
            document_category=DocumentCategory(row["document_category"]),
            status=JobStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            output_ref=row.get("output_ref"),
            failure_detail=row.get("failure_detail"),
        )

    def to_work_message(self) -> WorkMessage:
        return WorkMessage(job_id=self.id, input_ref=self.input_ref, document_category=self.document_category)

    def to_summary(self) -> JobSummary:
        """Submission response: id and status only."""
        return JobSummary(job_id=self.id, status=self.status)

    def to_status(self) -> JobStatusResponse:
        error = None
        if self.status == JobStatus.FAILED:
            error = self.failure_detail or "Processing failed"
        return JobStatusResponse(job_id=self.id, status=self.status, error=error)


@dataclass(frozen=True)
class DownloadOutcome:
    """
    Result of asking for a job's output.

    ``state`` is "ready" (output_ref set), "processing" (job in flight) or
    "failed" (detail set).
    """

    job: JobRecord
    state: str

    @property
    def output_ref(self) -> Optional[str]:
        return self.job.output_ref if self.state == "ready" else None

    @property
    def detail(self) -> Optional[str]:
        return self.job.failure_detail if self.state == "failed" else None


def parse_document_category(value) -> DocumentCategory:
    try:
        return DocumentCategory(value)
    except ValueError:
        allowed = ", ".join(category.value for category in DocumentCategory)
        raise ValidationError(f"documentType must be one of: {allowed}") from None


class StrandedJobError(TransientInfrastructureError):
    """The job was stored but its work message could not be published."""

    def __init__(self, job: JobRecord, cause: Exception) -> None:
        super().__init__(f"Job {job.id} stored but not enqueued: {cause}")
        self.job = job


class JobManager:
    """
    Central coordinator for job creation, reads and transitions.

    Attributes:
        database: Persistent job store
        queue: Channel work messages are published to
    """

    def __init__(
        self,
        database: JobDatabase,
        queue: QueueChannel,
        publish_attempts: int = 3,
        publish_backoff: float = 0.5,
    ) -> None:
        self.database = database
        self.queue = queue
        self.publish_attempts = publish_attempts
        self.publish_backoff = publish_backoff

    def _publish(self, job: JobRecord) -> None:
        message = job.to_work_message()
        retry_transient(
            lambda: self.queue.publish(message),
            attempts=self.publish_attempts,
            backoff=self.publish_backoff,
            description=f"Enqueue of job {job.id}",
        )

    def submit_job(self, identity: Identity, input_ref: str, document_category) -> JobRecord:
        """
        Create a PENDING job and enqueue it for processing.

        Args:
            identity: Resolved requester; anonymous requests create guest jobs
            input_ref: Storage key from a completed upload (not verified here)
            document_category: Category name or DocumentCategory

        Returns:
            The persisted job record

        Raises:
            ValidationError: Bad category or input reference; nothing stored
            StrandedJobError: Stored but not enqueued after retries; the job
                stays PENDING until the reconciliation sweep picks it up
        """
        category = parse_document_category(document_category)
        ref = validate_input_ref(input_ref)

        now = utcnow()
        job = JobRecord(
            id=str(uuid4()),
            owner_id=identity.owner_id,
            input_ref=ref,
            input_kind=derive_input_kind(ref),
            document_category=category,
            status=JobStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.database.insert_job(
            {
                "id": job.id,
                "owner_id": job.owner_id,
                "input_ref": job.input_ref,
                "input_kind": job.input_kind,
                "document_category": job.document_category.value,
                "status": job.status.value,
                "created_at": job.created_at,
                "updated_at": job.updated_at,
            }
        )
        logger.info(f"Created job {job.id} ({job.document_category.value}, {job.input_kind}) for {job.owner_id}")

        try:
            self._publish(job)
        except TransientInfrastructureError as exc:
            logger.error(f"Job {job.id} left PENDING without a queued message: {exc}")
            raise StrandedJobError(job, exc) from exc
        return job

    def load_job(self, job_id: str) -> Optional[JobRecord]:
        """Unscoped read, for the worker only."""
        row = self.database.get_job(job_id)
        return JobRecord.from_row(row) if row else None

    def get_job(self, job_id: str, identity: Identity) -> JobRecord:
        """
        Owner-scoped read.

        Raises:
            NotFoundError: Unknown job, or one the identity may not read;
                the two cases are indistinguishable to the caller
        """
        job = self.load_job(job_id)
        if job is None or not check_ownership(job, identity):
            raise NotFoundError(job_id)
        return job

    def resolve_download(self, job_id: str, identity: Identity) -> DownloadOutcome:
        job = self.get_job(job_id, identity)
        if job.status == JobStatus.COMPLETED:
            return DownloadOutcome(job, "ready")
        if job.status == JobStatus.FAILED:
            return DownloadOutcome(job, "failed")
        return DownloadOutcome(job, "processing")

    def _transition(self, job_id: str, update: JobUpdate) -> bool:
        changed = self.database.apply_update(job_id, update)
        if changed:
            logger.info(f"Job {job_id} -> {update.target.value}")
        else:
            logger.warning(f"Job {job_id} not moved to {update.target.value}: missing or not in an allowed state")
        return changed

    def mark_processing(self, job_id: str) -> bool:
        return self._transition(job_id, ProcessingUpdate())

    def mark_completed(self, job_id: str, output_ref: str) -> bool:
        return self._transition(job_id, CompletedUpdate(output_ref))

    def mark_failed(self, job_id: str, detail: str) -> bool:
        return self._transition(job_id, FailedUpdate(detail))

    def requeue_stale_jobs(self, older_than_seconds: float, limit: int = 100) -> int:
        """
        Re-publish work messages for jobs stuck in PENDING.

        A job that is merely waiting in a long queue may be published twice;
        the worker treats the duplicate as a no-op once the job has moved on.

        Returns:
            Number of jobs re-enqueued
        """
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        requeued = 0
        for row in self.database.list_stale_pending(cutoff, limit=limit):
            job = JobRecord.from_row(row)
            try:
                self._publish(job)
            except TransientInfrastructureError as exc:
                logger.error(f"Reconciliation could not re-enqueue job {job.id}: {exc}")
                break
            self.database.touch_pending(job.id)
            requeued += 1
        if requeued:
            logger.info(f"Reconciliation re-enqueued {requeued} stale PENDING job(s)")
        return requeued
