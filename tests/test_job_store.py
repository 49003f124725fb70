"""Tests for the job registry: create, read, update, bounded logs."""
import asyncio

import pytest

from music_dl_api.api.jobs.models import DownloadRequest, JobStatus
from music_dl_api.api.jobs.store import InvalidTransitionError, JobStore


def _req(url="https://music.apple.com/us/album/x/1", **kwargs):
    return DownloadRequest(url=url, **kwargs)


@pytest.mark.asyncio
async def test_create_and_get_job(store):
    rec = await store.create_job(_req(format="atmos"))
    assert rec.status == JobStatus.pending

    fetched = await store.get_job(rec.job_id)
    assert fetched is not None
    assert fetched.job_id == rec.job_id
    assert fetched.status == JobStatus.pending
    assert fetched.request.format.value == "atmos"
    assert fetched.created_at == rec.created_at
    assert fetched.ended_at is None
    assert fetched.logs == []


@pytest.mark.asyncio
async def test_ids_are_unique(store):
    ids = {(await store.create_job(_req())).job_id for _ in range(50)}
    assert len(ids) == 50


@pytest.mark.asyncio
async def test_get_nonexistent_job(store):
    assert await store.get_job("nonexistent") is None


@pytest.mark.asyncio
async def test_list_jobs_omits_logs(store):
    for i in range(3):
        rec = await store.create_job(_req(url=f"u{i}"))
        await store.append_log(rec.job_id, "hello")
    jobs = await store.list_jobs()
    assert len(jobs) == 3
    assert {j.url for j in jobs} == {"u0", "u1", "u2"}
    assert all(j.logs == [] for j in jobs)

    with_logs = await store.list_jobs(include_logs=True)
    assert all(j.logs == ["hello"] for j in with_logs)


@pytest.mark.asyncio
async def test_list_jobs_limit(store):
    for _ in range(4):
        await store.create_job(_req())
    assert len(await store.list_jobs(limit=2)) == 2


@pytest.mark.asyncio
async def test_append_log_updates_progress(store):
    rec = await store.create_job(_req())
    assert await store.append_log(rec.job_id, "first") is True
    assert await store.append_log(rec.job_id, "second") is True
    fetched = await store.get_job(rec.job_id)
    assert fetched.logs == ["first", "second"]
    assert fetched.progress == "second"


@pytest.mark.asyncio
async def test_append_log_ignores_blank_and_unknown(store):
    rec = await store.create_job(_req())
    assert await store.append_log(rec.job_id, "   ") is False
    assert await store.append_log(rec.job_id, "") is False
    assert await store.append_log("missing", "line") is False
    fetched = await store.get_job(rec.job_id)
    assert fetched.logs == []
    assert fetched.progress == ""


@pytest.mark.asyncio
async def test_log_is_bounded_fifo(store):
    rec = await store.create_job(_req())
    for i in range(150):
        await store.append_log(rec.job_id, f"line {i}")
    fetched = await store.get_job(rec.job_id)
    assert len(fetched.logs) == 100
    assert fetched.logs[0] == "line 50"
    assert fetched.logs[-1] == "line 149"
    assert fetched.progress == fetched.logs[-1]


@pytest.mark.asyncio
async def test_log_bound_is_per_job():
    s = JobStore(max_log_lines=5)
    try:
        a = await s.create_job(_req())
        b = await s.create_job(_req())
        for i in range(8):
            await s.append_log(a.job_id, f"a{i}")
        await s.append_log(b.job_id, "b0")
        assert (await s.get_job(a.job_id)).logs == ["a3", "a4", "a5", "a6", "a7"]
        assert (await s.get_job(b.job_id)).logs == ["b0"]
    finally:
        await s.close()


@pytest.mark.asyncio
async def test_update_unknown_job_is_noop(store):
    called = []
    result = await store.update_job("missing", lambda rec: called.append(rec))
    assert result is None
    assert called == []


@pytest.mark.asyncio
async def test_mark_running(store):
    rec = await store.create_job(_req())
    running = await store.mark_running(rec.job_id)
    assert running.status == JobStatus.running
    assert running.started_at is not None
    # Only pending jobs can start
    assert await store.mark_running(rec.job_id) is None


@pytest.mark.asyncio
async def test_finish_job_sets_terminal_fields(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)
    applied = await store.finish_job(
        rec.job_id, JobStatus.failed, error="exit status 1", duration=1.5, message="Download failed: exit status 1"
    )
    assert applied is True
    fetched = await store.get_job(rec.job_id)
    assert fetched.status == JobStatus.failed
    assert fetched.error == "exit status 1"
    assert fetched.duration == 1.5
    assert fetched.ended_at is not None
    assert fetched.logs[-1] == "Download failed: exit status 1"
    assert fetched.progress == fetched.logs[-1]


@pytest.mark.asyncio
async def test_second_settlement_is_rejected(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)
    assert await store.finish_job(rec.job_id, JobStatus.completed, message="done") is True
    assert await store.finish_job(rec.job_id, JobStatus.failed, error="late", message="late") is False
    fetched = await store.get_job(rec.job_id)
    assert fetched.status == JobStatus.completed
    assert fetched.error is None
    assert "late" not in fetched.logs


@pytest.mark.asyncio
async def test_concurrent_settlements_apply_once(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)
    results = await asyncio.gather(
        store.finish_job(rec.job_id, JobStatus.failed, error="timed out", message="timeout"),
        store.finish_job(rec.job_id, JobStatus.completed, message="completed"),
        store.finish_job(rec.job_id, JobStatus.cancelled, error="Cancelled by user", message="cancel"),
    )
    assert sorted(results) == [False, False, True]
    fetched = await store.get_job(rec.job_id)
    assert fetched.status.is_terminal
    terminal_lines = [line for line in fetched.logs if line in ("timeout", "completed", "cancel")]
    assert len(terminal_lines) == 1


@pytest.mark.asyncio
async def test_pending_job_cannot_be_settled_by_default(store):
    rec = await store.create_job(_req())
    assert await store.finish_job(rec.job_id, JobStatus.cancelled) is False
    assert (await store.get_job(rec.job_id)).status == JobStatus.pending


@pytest.mark.asyncio
async def test_finish_requires_terminal_status(store):
    rec = await store.create_job(_req())
    with pytest.raises(ValueError):
        await store.finish_job(rec.job_id, JobStatus.running)


@pytest.mark.asyncio
async def test_status_cannot_regress(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)
    await store.finish_job(rec.job_id, JobStatus.completed)

    def _reopen(r):
        r.status = JobStatus.running
        r.ended_at = None

    with pytest.raises(InvalidTransitionError):
        await store.update_job(rec.job_id, _reopen)
    assert (await store.get_job(rec.job_id)).status == JobStatus.completed


@pytest.mark.asyncio
async def test_pending_cannot_skip_running(store):
    rec = await store.create_job(_req())

    def _complete(r):
        r.status = JobStatus.completed

    with pytest.raises(InvalidTransitionError):
        await store.update_job(rec.job_id, _complete)


@pytest.mark.asyncio
async def test_ended_at_requires_terminal_status(store):
    rec = await store.create_job(_req())

    def _stamp(r):
        r.ended_at = "2026-01-01T00:00:00+00:00"

    with pytest.raises(InvalidTransitionError):
        await store.update_job(rec.job_id, _stamp)


@pytest.mark.asyncio
async def test_terminal_update_stamps_ended_at(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)

    def _fail(r):
        r.status = JobStatus.failed
        r.error = "boom"

    updated = await store.update_job(rec.job_id, _fail)
    assert updated.ended_at is not None


@pytest.mark.asyncio
async def test_mutation_cannot_touch_identity_or_log(store):
    rec = await store.create_job(_req(url="original"))
    await store.append_log(rec.job_id, "kept")

    def _tamper(r):
        r.url = "changed"
        r.progress = "forged"
        r.logs.append("forged")

    await store.update_job(rec.job_id, _tamper)
    fetched = await store.get_job(rec.job_id)
    assert fetched.url == "original"
    assert fetched.progress == "kept"
    assert fetched.logs == ["kept"]


@pytest.mark.asyncio
async def test_records_are_detached_snapshots(store):
    rec = await store.create_job(_req())
    fetched = await store.get_job(rec.job_id)
    fetched.status = JobStatus.failed
    fetched.logs.append("local only")
    again = await store.get_job(rec.job_id)
    assert again.status == JobStatus.pending
    assert again.logs == []


@pytest.mark.asyncio
async def test_store_initializes_lazily():
    s = JobStore()
    try:
        rec = await s.create_job(_req())
        assert (await s.get_job(rec.job_id)) is not None
    finally:
        await s.close()


@pytest.mark.asyncio
async def test_settled_job_rejects_log_lines(store):
    rec = await store.create_job(_req())
    await store.mark_running(rec.job_id)
    await store.append_log(rec.job_id, "working")
    await store.finish_job(rec.job_id, JobStatus.cancelled, error="Cancelled by user", message="Cancelled by user")

    assert await store.append_log(rec.job_id, "late output") is False
    fetched = await store.get_job(rec.job_id)
    assert fetched.logs == ["working", "Cancelled by user"]
    assert fetched.progress == "Cancelled by user"


@pytest.mark.asyncio
async def test_pending_job_can_fail_before_dispatch(store):
    rec = await store.create_job(_req())
    applied = await store.finish_job(
        rec.job_id, JobStatus.failed, error="Server shutting down", expect=(JobStatus.pending,)
    )
    assert applied is True
    fetched = await store.get_job(rec.job_id)
    assert fetched.status == JobStatus.failed
    assert fetched.ended_at is not None
