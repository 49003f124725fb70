"""In-memory job registry and downloader process runner."""
from .framing import LineFramer, LineTooLongError
from .models import AudioFormat, DownloadRequest, JobRecord, JobStatus
from .runner import JobNotFoundError, JobNotRunningError, JobRunner
from .store import InvalidTransitionError, JobStore

__all__ = [
    "AudioFormat",
    "DownloadRequest",
    "InvalidTransitionError",
    "JobNotFoundError",
    "JobNotRunningError",
    "JobRecord",
    "JobRunner",
    "JobStatus",
    "JobStore",
    "LineFramer",
    "LineTooLongError",
]
