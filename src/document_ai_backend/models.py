from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return not self.is_terminal


class DocumentCategory(str, Enum):
    EXPENSE = "EXPENSE"
    HR = "HR"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WorkMessage(_CamelModel):
    """Queue payload: everything a worker needs to start on a job."""

    job_id: str = Field(alias="jobId", min_length=1)
    input_ref: str = Field(alias="inputRef", min_length=1)
    document_category: DocumentCategory = Field(alias="documentCategory")

    def to_body(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_body(cls, body: str) -> "WorkMessage":
        return cls.model_validate_json(body)


class UploadGrantRequest(_CamelModel):
    file_name: str = Field(alias="fileName", min_length=1)
    content_type: str = Field(alias="contentType", min_length=1)


class UploadGrant(_CamelModel):
    url: str
    key: str
    expires_at: datetime = Field(alias="expiresAt")


class DownloadGrant(_CamelModel):
    url: str
    expires_at: datetime = Field(alias="expiresAt")


class CreateJobRequest(_CamelModel):
    input_file_key: str = Field(alias="inputFileKey")
    document_type: str = Field(alias="documentType")


class JobSummary(_CamelModel):
    job_id: str = Field(alias="jobId")
    status: JobStatus


class JobStatusResponse(JobSummary):
    error: Optional[str] = None


class DownloadResponse(_CamelModel):
    status: JobStatus
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    message: Optional[str] = None
    error: Optional[str] = None


class CreateKeyRequest(BaseModel):
    owner: str = Field(min_length=1)


class CreateKeyResponse(BaseModel):
    api_key: str
    record: dict
