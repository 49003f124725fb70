"""In-memory SQLite registry for job records."""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

import aiosqlite

from .models import (
    TERMINAL_STATES,
    DownloadRequest,
    JobRecord,
    JobStatus,
    can_transition,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_LOG_LINES = 100

# Columns a mutation is allowed to change.  ``progress`` and ``logs`` are
# owned by ``append_log``; identity fields never change after creation.
_MUTABLE_COLUMNS = ("status", "error", "started_at", "ended_at", "duration")


class InvalidTransitionError(Exception):
    """A mutation tried to move a job backwards or out of a terminal state."""


class JobStore:
    """Async store for job lifecycle tracking.

    All records live in a single SQLite connection (``:memory:`` unless told
    otherwise).  Every public method runs as one critical section under an
    ``asyncio.Lock``; the section is shielded, so cancelling the caller
    cannot leave a half-applied write behind.  Records only leave the store
    as detached ``JobRecord`` copies.
    """

    def __init__(self, db_path: str = ":memory:", max_log_lines: int = DEFAULT_MAX_LOG_LINES) -> None:
        self.db_path = db_path
        self.max_log_lines = max(1, int(max_log_lines))
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create tables if needed."""
        async with self._lock:
            await self._ensure_db()

    async def close(self) -> None:
        async with self._lock:
            if self._db is not None:
                await self._db.close()
                self._db = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is not None:
            return self._db
        db = await aiosqlite.connect(self.db_path)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                request TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL,
                started_at TEXT,
                ended_at TEXT,
                duration REAL,
                progress TEXT NOT NULL DEFAULT '',
                error TEXT
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS job_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                line TEXT NOT NULL
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs (job_id, seq)")
        await db.commit()
        self._db = db
        return db

    async def _atomic(self, op: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def _locked() -> T:
            async with self._lock:
                db = await self._ensure_db()
                return await op(db)

        return await asyncio.shield(_locked())

    # ── Create / Read ────────────────────────────────────────────────

    async def create_job(self, request: DownloadRequest) -> JobRecord:
        """Insert a new pending job and return its record."""

        async def _op(db: aiosqlite.Connection) -> JobRecord:
            while True:
                rec = JobRecord(job_id=str(uuid.uuid4()), url=request.url, request=request)
                try:
                    await db.execute(
                        "INSERT INTO jobs (job_id, url, request, status, created_at) VALUES (?,?,?,?,?)",
                        (rec.job_id, rec.url, request.model_dump_json(), rec.status.value, rec.created_at),
                    )
                except sqlite3.IntegrityError:
                    logger.warning("Job id collision on %s, drawing a new one", rec.job_id)
                    continue
                await db.commit()
                return rec

        return await self._atomic(_op)

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Fetch a single job, logs included."""

        async def _op(db: aiosqlite.Connection) -> Optional[JobRecord]:
            return await self._fetch(db, job_id, include_logs=True)

        return await self._atomic(_op)

    async def list_jobs(self, limit: Optional[int] = None, include_logs: bool = False) -> List[JobRecord]:
        """Snapshot of all jobs, newest first.

        Logs are left out unless *include_logs* is set, which keeps listing
        cheap however long the individual logs are.
        """
        sql = "SELECT * FROM jobs ORDER BY created_at DESC, rowid DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        async def _op(db: aiosqlite.Connection) -> List[JobRecord]:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
                desc = cur.description
            records = [self._row_to_record(r, desc) for r in rows]
            if include_logs:
                for rec in records:
                    rec.logs = await self._fetch_logs(db, rec.job_id)
            return records

        return await self._atomic(_op)

    # ── Mutations ────────────────────────────────────────────────────

    async def update_job(
        self,
        job_id: str,
        mutation: Callable[[JobRecord], None],
        *,
        expect: Optional[Iterable[JobStatus]] = None,
        message: Optional[str] = None,
    ) -> Optional[JobRecord]:
        """Apply *mutation* to the job atomically and return the new record.

        Returns ``None`` without touching anything if the job is absent or
        its current status is not in *expect*.  Only lifecycle columns are
        written back.  If *message* is given it is appended to the log in
        the same critical section.

        Raises
        ------
        InvalidTransitionError
            If the mutation moves ``status`` against the state machine or
            breaks the ``ended_at``/terminal pairing.
        """
        allowed = set(expect) if expect is not None else None

        async def _op(db: aiosqlite.Connection) -> Optional[JobRecord]:
            current = await self._fetch(db, job_id, include_logs=False)
            if current is None:
                return None
            if allowed is not None and current.status not in allowed:
                return None

            updated = current.model_copy(deep=True)
            mutation(updated)
            updated.status = JobStatus(updated.status)

            if not can_transition(current.status, updated.status):
                raise InvalidTransitionError(
                    f"Job '{job_id}' cannot move from {current.status.value} to {updated.status.value}"
                )
            if updated.status.is_terminal and updated.ended_at is None:
                updated.ended_at = utc_now()
            if not updated.status.is_terminal and updated.ended_at is not None:
                raise InvalidTransitionError(
                    f"Job '{job_id}' cannot carry ended_at while {updated.status.value}"
                )

            # Log first: terminal jobs no longer accept lines.
            if message is not None:
                await self._append(db, job_id, message)
            sets = ", ".join(f"{col} = ?" for col in _MUTABLE_COLUMNS)
            vals = [
                updated.status.value,
                updated.error,
                updated.started_at,
                updated.ended_at,
                updated.duration,
                job_id,
            ]
            await db.execute(f"UPDATE jobs SET {sets} WHERE job_id = ?", vals)
            await db.commit()
            return await self._fetch(db, job_id, include_logs=False)

        return await self._atomic(_op)

    async def append_log(self, job_id: str, line: str) -> bool:
        """Append *line* to the bounded log and make it the job's progress.

        Returns False (and does nothing) for blank lines, unknown jobs and
        jobs that have already settled.
        """
        if not line or not line.strip():
            return False

        async def _op(db: aiosqlite.Connection) -> bool:
            appended = await self._append(db, job_id, line)
            if appended:
                await db.commit()
            return appended

        return await self._atomic(_op)

    async def mark_running(self, job_id: str) -> Optional[JobRecord]:
        """Move a pending job to running and stamp ``started_at``."""

        def _start(rec: JobRecord) -> None:
            rec.status = JobStatus.running
            rec.started_at = utc_now()

        return await self.update_job(job_id, _start, expect=(JobStatus.pending,))

    async def finish_job(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        duration: Optional[float] = None,
        message: Optional[str] = None,
        expect: Iterable[JobStatus] = (JobStatus.running,),
    ) -> bool:
        """Settle the job in a terminal *status*.

        Compare-and-set on the current status: only the first settlement
        for a job is applied, later ones return False.
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        def _settle(rec: JobRecord) -> None:
            rec.status = status
            rec.error = error
            rec.ended_at = utc_now()
            rec.duration = duration

        updated = await self.update_job(job_id, _settle, expect=expect, message=message)
        return updated is not None

    # ── Helpers ───────────────────────────────────────────────────────

    async def _append(self, db: aiosqlite.Connection, job_id: str, line: str) -> bool:
        cur = await db.execute(
            "UPDATE jobs SET progress = ? WHERE job_id = ? AND status NOT IN (?, ?, ?)",
            (line, job_id, *(s.value for s in TERMINAL_STATES)),
        )
        if cur.rowcount == 0:
            return False
        await db.execute("INSERT INTO job_logs (job_id, line) VALUES (?, ?)", (job_id, line))
        await db.execute(
            """
            DELETE FROM job_logs
            WHERE job_id = ? AND seq NOT IN (
                SELECT seq FROM job_logs WHERE job_id = ? ORDER BY seq DESC LIMIT ?
            )
            """,
            (job_id, job_id, self.max_log_lines),
        )
        return True

    async def _fetch(self, db: aiosqlite.Connection, job_id: str, include_logs: bool) -> Optional[JobRecord]:
        async with db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        rec = self._row_to_record(row, desc)
        if include_logs:
            rec.logs = await self._fetch_logs(db, job_id)
        return rec

    @staticmethod
    async def _fetch_logs(db: aiosqlite.Connection, job_id: str) -> List[str]:
        async with db.execute(
            "SELECT line FROM job_logs WHERE job_id = ? ORDER BY seq", (job_id,)
        ) as cur:
            rows = await cur.fetchall()
        return [r[0] for r in rows]

    @staticmethod
    def _row_to_record(row, description) -> JobRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["request"] = DownloadRequest(**json.loads(d["request"]))
        d["progress"] = d.get("progress") or ""
        return JobRecord(**d)
