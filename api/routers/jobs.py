"""Job event streaming endpoint."""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from ..deps.providers import get_job_runner, get_job_store
from ..jobs.runner import JobNotFoundError, JobRunner
from ..jobs.store import JobStore

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("/{job_id}/events")
async def job_events(
    job_id: str,
    store: JobStore = Depends(get_job_store),
    runner: JobRunner = Depends(get_job_runner),
):
    rec = await store.get_job(job_id)
    if rec is None:
        raise JobNotFoundError(f"Job '{job_id}' not found")

    async def _generate():
        async for event in runner.subscribe_events(job_id):
            yield {"event": event.get("event", "message"), "data": json.dumps(event)}

    return EventSourceResponse(_generate())
