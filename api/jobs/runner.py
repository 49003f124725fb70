"""Async job runner: supervises one downloader process per job."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from .download_job import (
    DEFAULT_TIMEOUT_SECONDS,
    build_command,
    describe_request,
    effective_timeout,
    format_command,
)
from .framing import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_LINE_BYTES, LineTooLongError, aiter_lines
from .models import DownloadRequest, JobRecord, JobStatus
from .store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOADER_PATH = "/usr/local/bin/apple-music-dl"

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

Outcome = Tuple[JobStatus, Optional[str], str]


class JobNotFoundError(Exception):
    """Requested job ID does not exist."""


class JobNotRunningError(Exception):
    """The requested action needs a running job."""


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"terminated by signal {name}"
    return f"exit status {returncode}"


def _seconds_since(iso_ts: Optional[str]) -> Optional[float]:
    if not iso_ts:
        return None
    started = datetime.fromisoformat(iso_ts)
    return round((datetime.now(timezone.utc) - started).total_seconds(), 3)


class JobRunner:
    """Runs download jobs as background asyncio tasks.

    Each submitted job gets one task that launches the downloader, pumps
    stdout and stderr into the job log, enforces the deadline and settles
    the job exactly once.  There is no concurrency cap: every job starts as
    soon as it is submitted.
    """

    def __init__(
        self,
        store: JobStore,
        downloader_path: str = DEFAULT_DOWNLOADER_PATH,
        default_timeout: int = DEFAULT_TIMEOUT_SECONDS,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self.downloader_path = downloader_path
        self.default_timeout = default_timeout
        self.max_line_bytes = max_line_bytes
        self.kill_grace_seconds = kill_grace_seconds
        self._active_tasks: Dict[str, asyncio.Task] = {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._cancel_reasons: Dict[str, str] = {}
        self._event_subscribers: Dict[str, list] = {}

    # ── Submit & Run ─────────────────────────────────────────────────

    @property
    def active_count(self) -> int:
        """Number of jobs whose task has not finished yet."""
        return len(self._active_tasks)

    async def submit(self, job_id: str, request: DownloadRequest) -> asyncio.Task:
        """Start *job_id* in the background and return immediately."""
        task = asyncio.create_task(self.run(job_id, request), name=f"download-{job_id}")
        self._active_tasks[job_id] = task
        return task

    async def wait(self, job_id: str) -> None:
        """Block until the task for *job_id* (if any) has finished."""
        task = self._active_tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def run(self, job_id: str, request: DownloadRequest) -> None:
        """Drive one job from pending to a terminal state."""
        started = time.monotonic()
        try:
            rec = await self._store.mark_running(job_id)
            if rec is None:
                logger.warning("[Job %s] Not pending, refusing to start", job_id)
                return
            logger.info("[Job %s] Starting download of %s", job_id, request.url)
            await self._emit(job_id, {"event": "started", "job_id": job_id})
            await self._log(job_id, f"Starting download at {rec.started_at}")
            for line in describe_request(request):
                await self._log(job_id, line)

            args = build_command(request)
            await self._log(job_id, f"Command: {format_command(self.downloader_path, args)}")

            timeout = effective_timeout(request, self.default_timeout)
            status, error, message = await self._execute(job_id, args, timeout, started)
            await self._settle(job_id, status, error, message, started)
        except asyncio.CancelledError:
            reason = self._cancel_reasons.get(job_id, "Cancelled")
            await self._settle(job_id, JobStatus.cancelled, reason, reason, started)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("[Job %s] Runner error", job_id)
            error = f"internal error: {exc}"
            await self._settle(job_id, JobStatus.failed, error, f"Download failed: {error}", started)
        finally:
            self._active_tasks.pop(job_id, None)
            self._processes.pop(job_id, None)
            self._cancel_reasons.pop(job_id, None)
            await self._emit(job_id, {"event": "done", "job_id": job_id})

    async def _execute(self, job_id: str, args: List[str], timeout: int, started: float) -> Outcome:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.downloader_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            error = f"failed to start command: {exc}"
            return JobStatus.failed, error, f"Download failed: {error}"

        self._processes[job_id] = proc
        logger.info("[Job %s] Process started (PID: %s)", job_id, proc.pid)
        await self._log(job_id, f"Process started (PID: {proc.pid})")

        try:
            returncode = await asyncio.wait_for(self._supervise(job_id, proc), timeout=timeout)
        except asyncio.TimeoutError:
            await self._teardown(job_id, proc, graceful=False)
            error = f"Download timed out after {time.monotonic() - started:.2f}s"
            return JobStatus.failed, error, error
        except asyncio.CancelledError:
            await self._teardown(job_id, proc, graceful=True)
            raise

        if returncode != 0:
            error = _describe_exit(returncode)
            return JobStatus.failed, error, f"Download failed: {error}"
        return JobStatus.completed, None, "Download completed successfully"

    async def _supervise(self, job_id: str, proc: asyncio.subprocess.Process) -> int:
        # Both streams must hit EOF before the exit status counts, or the
        # last lines written before exit could be lost.
        await asyncio.gather(
            self._drain(job_id, proc.stdout, "stdout"),
            self._drain(job_id, proc.stderr, "stderr"),
        )
        return await proc.wait()

    async def _drain(self, job_id: str, stream: asyncio.StreamReader, name: str) -> None:
        try:
            async for line in aiter_lines(stream, max_line_bytes=self.max_line_bytes):
                text = line.strip()
                if not text:
                    continue
                logger.debug("[Job %s] %s: %s", job_id, name, text)
                await self._log(job_id, text)
        except LineTooLongError as exc:
            logger.warning("[Job %s] Stream error (%s): %s", job_id, name, exc)
            await self._log(job_id, f"Stream error ({name}): {exc}")
            # Keep the pipe empty so the process cannot stall on a full buffer.
            while await stream.read(DEFAULT_CHUNK_SIZE):
                pass

    async def _teardown(self, job_id: str, proc: asyncio.subprocess.Process, *, graceful: bool) -> None:
        """Stop the process group; SIGTERM first when *graceful*."""
        if proc.returncode is not None:
            return
        if graceful:
            logger.info("[Job %s] Sending SIGTERM to PID %s", job_id, proc.pid)
            self._signal(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
                return
            except asyncio.TimeoutError:
                logger.warning("[Job %s] PID %s did not terminate, sending SIGKILL", job_id, proc.pid)
        else:
            logger.info("[Job %s] Killing PID %s", job_id, proc.pid)
        self._signal(proc, _SIGKILL)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.error("[Job %s] PID %s still alive after SIGKILL", job_id, proc.pid)

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass  # already gone

    async def _settle(
        self,
        job_id: str,
        status: JobStatus,
        error: Optional[str],
        message: str,
        started: float,
    ) -> bool:
        duration = round(time.monotonic() - started, 3)
        applied = await self._store.finish_job(
            job_id, status, error=error, duration=duration, message=message
        )
        if not applied:
            logger.info("[Job %s] Already settled, dropping %s outcome", job_id, status.value)
            return False
        if status == JobStatus.completed:
            logger.info("[Job %s] Completed successfully in %.2fs", job_id, duration)
        elif status == JobStatus.cancelled:
            logger.info("[Job %s] Cancelled after %.2fs: %s", job_id, duration, error)
        else:
            logger.warning("[Job %s] Failed after %.2fs: %s", job_id, duration, error)
        await self._emit(job_id, {"event": "log", "job_id": job_id, "line": message})
        await self._emit(job_id, {"event": status.value, "job_id": job_id, "error": error})
        return True

    async def _log(self, job_id: str, line: str) -> None:
        if await self._store.append_log(job_id, line):
            await self._emit(job_id, {"event": "log", "job_id": job_id, "line": line})

    # ── Cancel ───────────────────────────────────────────────────────

    async def cancel(self, job_id: str, reason: str = "Cancelled by user") -> JobRecord:
        """Cancel a running job.

        The cancellation is recorded first, then the job's task is
        cancelled, which terminates the downloader process group.  Process
        teardown is best effort: the process may exit on its own first.

        Raises
        ------
        JobNotFoundError
            If *job_id* is unknown.
        JobNotRunningError
            If the job is pending or already settled.
        """
        rec = await self._store.get_job(job_id)
        if rec is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        if rec.status != JobStatus.running:
            raise JobNotRunningError(f"Job '{job_id}' is not running (status: {rec.status.value})")

        applied = await self._store.finish_job(
            job_id,
            JobStatus.cancelled,
            error=reason,
            duration=_seconds_since(rec.started_at),
            message=reason,
        )
        if not applied:
            raise JobNotRunningError(f"Job '{job_id}' finished before it could be cancelled")
        logger.info("[Job %s] %s", job_id, reason)
        await self._emit(job_id, {"event": "log", "job_id": job_id, "line": reason})
        await self._emit(job_id, {"event": "cancelled", "job_id": job_id, "error": reason})

        self._cancel_reasons[job_id] = reason
        task = self._active_tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
        updated = await self._store.get_job(job_id)
        return updated if updated is not None else rec

    async def shutdown(self) -> None:
        """Cancel every active job and wait for their processes to stop.

        Jobs whose task had not started yet are settled as failed.
        """
        tasks = list(self._active_tasks.items())
        if not tasks:
            return
        logger.info("Stopping %d active job(s)", len(tasks))
        reason = "Server shutting down"
        for job_id, task in tasks:
            self._cancel_reasons[job_id] = reason
            task.cancel()
        await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
        self._active_tasks.clear()

        # Tasks cancelled before their first step never left pending.
        for job_id, _ in tasks:
            applied = await self._store.finish_job(
                job_id, JobStatus.failed, error=reason, message=reason, expect=(JobStatus.pending,)
            )
            if applied:
                logger.info("[Job %s] Failed before dispatch: %s", job_id, reason)
                await self._emit(job_id, {"event": "failed", "job_id": job_id, "error": reason})
                await self._emit(job_id, {"event": "done", "job_id": job_id})
            self._cancel_reasons.pop(job_id, None)

    # ── SSE Event Streaming ──────────────────────────────────────────

    async def subscribe_events(self, job_id: str) -> AsyncGenerator[Dict[str, Any], None]:
        """Yield events for a job until it is done."""
        queue: asyncio.Queue = asyncio.Queue()
        self._event_subscribers.setdefault(job_id, []).append(queue)
        try:
            # Send current state as first event
            rec = await self._store.get_job(job_id)
            if rec is None:
                return
            yield {"event": "status", "data": rec.model_dump(mode="json")}
            if rec.status.is_terminal and job_id not in self._active_tasks:
                return

            while True:
                event = await queue.get()
                yield event
                if event.get("event") == "done":
                    break
        finally:
            subs = self._event_subscribers.get(job_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._event_subscribers.pop(job_id, None)

    async def _emit(self, job_id: str, event: Dict[str, Any]) -> None:
        for q in self._event_subscribers.get(job_id, []):
            await q.put(event)
