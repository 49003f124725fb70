"""Pydantic schemas for API request/response models."""
from .envelope import ApiResponse, ResponseMeta
from .jobs import DownloadAccepted, JobDetail, JobList, JobSummary

__all__ = ["ApiResponse", "DownloadAccepted", "JobDetail", "JobList", "JobSummary", "ResponseMeta"]
