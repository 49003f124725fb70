"""Job data models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.completed, JobStatus.failed, JobStatus.cancelled}
)

# Allowed forward moves; terminal states have none.  pending -> failed only
# happens when the server stops before the job was dispatched.
TRANSITIONS = {
    JobStatus.pending: frozenset({JobStatus.running, JobStatus.failed}),
    JobStatus.running: TERMINAL_STATES,
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.cancelled: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Return True if *current* may move to *target* (or stays put)."""
    return current == target or target in TRANSITIONS[current]


class AudioFormat(str, enum.Enum):
    alac = "alac"
    atmos = "atmos"
    aac = "aac"


class DownloadRequest(BaseModel):
    """Submission payload for one download job.

    ``format`` is a closed set: blank means ALAC, anything unknown is a
    validation error instead of a silent fallback to ALAC.
    """

    url: str = ""
    format: AudioFormat = AudioFormat.alac
    song: bool = False
    debug: bool = False
    timeout: int = Field(default=0, ge=0, description="Seconds; 0 means the server default")

    @field_validator("format", mode="before")
    @classmethod
    def _blank_format_is_default(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return AudioFormat.alac
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("url", mode="before")
    @classmethod
    def _strip_url(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        return value


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobRecord(BaseModel):
    """In-memory representation of a download job."""

    job_id: str
    url: str
    request: DownloadRequest
    status: JobStatus = JobStatus.pending
    created_at: str = Field(default_factory=utc_now)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration: Optional[float] = None
    progress: str = ""
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
