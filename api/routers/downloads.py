"""Download submission, status, listing and cancellation endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from ..deps.providers import get_job_runner, get_job_store
from ..errors import InvalidRequestError
from ..jobs.models import DownloadRequest
from ..jobs.runner import JobNotFoundError, JobRunner
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse
from ..schemas.jobs import DownloadAccepted, JobDetail, JobList

logger = logging.getLogger(__name__)

router = APIRouter(tags=["downloads"])


@router.post("/download")
async def submit_download(
    request: DownloadRequest,
    store: JobStore = Depends(get_job_store),
    runner: JobRunner = Depends(get_job_runner),
) -> ApiResponse:
    if not request.url:
        raise InvalidRequestError("URL is required")
    rec = await store.create_job(request)
    await runner.submit(rec.job_id, request)
    logger.info("Accepted job %s for %s", rec.job_id, request.url)
    return ApiResponse.success(DownloadAccepted(job_id=rec.job_id).model_dump())


@router.get("/status/{job_id}")
async def job_status(
    job_id: str,
    store: JobStore = Depends(get_job_store),
) -> ApiResponse:
    rec = await store.get_job(job_id)
    if rec is None:
        raise JobNotFoundError(f"Job '{job_id}' not found")
    return ApiResponse.success(JobDetail.from_record(rec).model_dump(mode="json"))


@router.get("/jobs")
async def list_jobs(store: JobStore = Depends(get_job_store)) -> ApiResponse:
    records = await store.list_jobs()
    return ApiResponse.success(JobList.from_records(records).model_dump(mode="json"))


@router.post("/cancel/{job_id}")
async def cancel_job(
    job_id: str,
    runner: JobRunner = Depends(get_job_runner),
) -> ApiResponse:
    rec = await runner.cancel(job_id)
    return ApiResponse.success({"job_id": rec.job_id, "status": rec.status.value})
