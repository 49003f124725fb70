"""Public views of job records."""
from __future__ import annotations

from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from ..jobs.models import JobRecord, JobStatus


class DownloadAccepted(BaseModel):
    """Acknowledgement returned by ``POST /download``."""

    job_id: str
    status: str = "started"


class JobSummary(BaseModel):
    """List entry: identifying and summary fields only, no log or progress."""

    id: str
    url: str
    status: JobStatus
    error: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration: Optional[float] = None

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobSummary":
        return cls(
            id=rec.job_id,
            url=rec.url,
            status=rec.status,
            error=rec.error,
            created_at=rec.created_at,
            started_at=rec.started_at,
            ended_at=rec.ended_at,
            duration=rec.duration,
        )


class JobDetail(JobSummary):
    """Single-job view including the bounded log."""

    format: str
    song: bool = False
    debug: bool = False
    timeout: int = 0
    progress: str = ""
    logs: List[str] = Field(default_factory=list)

    @classmethod
    def from_record(cls, rec: JobRecord) -> "JobDetail":
        summary = JobSummary.from_record(rec)
        return cls(
            **summary.model_dump(),
            format=rec.request.format.value,
            song=rec.request.song,
            debug=rec.request.debug,
            timeout=rec.request.timeout,
            progress=rec.progress,
            logs=list(rec.logs),
        )


class JobList(BaseModel):
    jobs: List[JobSummary] = Field(default_factory=list)
    count: int = 0

    @classmethod
    def from_records(cls, records: Sequence[JobRecord]) -> "JobList":
        jobs = [JobSummary.from_record(r) for r in records]
        return cls(jobs=jobs, count=len(jobs))
