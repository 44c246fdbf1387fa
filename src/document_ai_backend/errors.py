"""
Exception hierarchy for the document job pipeline.

Errors fall into two groups:
- Synchronous request errors (ValidationError, NotFoundError) that the HTTP
  layer maps to 4xx responses.
- Infrastructure and processing errors raised inside the pipeline.
  TransientInfrastructureError is retried (at the call site or by queue
  redelivery); ProcessingError and its subclasses are permanent and end
  the job in FAILED.
"""

from __future__ import annotations


class DocumentJobError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(DocumentJobError):
    """Rejected request input; no job is created."""


class NotFoundError(DocumentJobError):
    """Unknown job, or a job the requester may not see."""

    def __init__(self, job_id: str) -> None:
        super().__init__("Job not found")
        self.job_id = job_id


class TransientInfrastructureError(DocumentJobError):
    """Queue or storage temporarily unavailable."""


class ProcessingError(DocumentJobError):
    """Permanent failure while processing a job."""


class ExtractionError(ProcessingError):
    """Raised by the extraction collaborator."""


class ExportError(ProcessingError):
    """Raised by the export collaborator."""


class InvalidTransitionError(DocumentJobError):
    """An update variant was applied to a status it cannot follow."""
