from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, StringConstraints, model_validator

from ..models import JobStatus
from ..util.ids import JOB_ID_PATTERN

JobIdStr = Annotated[
    str,
    StringConstraints(
        strip_whitespace=True,
        min_length=1,
        max_length=128,
        pattern=JOB_ID_PATTERN,
    ),
]


class CreateJobRequest(BaseModel):
    """Request to create a scan job."""

    bucket: str | None = None
    object_key: str | None = None
    path: str | None = None
    mode: Literal["light", "full"] = "light"
    format: Literal["json", "text"] = "json"
    refs: bool = False
    id: JobIdStr | None = None

    @model_validator(mode="after")
    def _check_source(self) -> CreateJobRequest:
        if not self.path and not self.object_key:
            raise ValueError("Provide `path` or `object_key`")
        return self


class JobResponse(BaseModel):
    """Job row as returned to clients."""

    id: str
    status: JobStatus
    bucket: str | None = None
    object_key: str | None = None
    path: str | None = None
    mode: str
    format: str
    refs: bool = False
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress_pct: int = 0
    progress_msg: str | None = None
    report_location: str | None = None
    error_msg: str | None = None
    summary: dict[str, Any] | None = None


class CreateJobResponse(BaseModel):
    """Response after creating a job."""

    job_id: str
    status: JobStatus
    links: dict[str, str]


class ListJobsResponse(BaseModel):
    """Most recent jobs, newest first."""

    items: list[JobResponse]
    limit: int


class ProgressRecordResponse(BaseModel):
    """One progress line."""

    job_id: str
    ts: datetime | None = None
    stage: str
    detail: str | None = None
    pct: float | None = None


class ProgressListResponse(BaseModel):
    job_id: str
    items: list[ProgressRecordResponse] = Field(default_factory=list)


class CancelJobResponse(BaseModel):
    job_id: str
    cancelled: bool
    status: JobStatus
