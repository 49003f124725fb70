"""Shared test fixtures for the music_dl_api test suite."""
from __future__ import annotations

import asyncio
import stat
import time
from pathlib import Path

import pytest


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    Leftover aiosqlite worker threads or subprocess transports from a
    failed test can keep the interpreter alive after the run.  This
    watchdog ensures pytest exits within a few seconds of test completion.
    """
    import os
    import threading

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Fake downloader ──────────────────────────────────────────────────


@pytest.fixture
def fake_downloader(tmp_path):
    """Factory writing an executable ``/bin/sh`` script that stands in for apple-music-dl."""
    counter = {"n": 0}

    def _make(body: str) -> str:
        counter["n"] += 1
        path = Path(tmp_path) / f"fake-dl-{counter['n']}.sh"
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def three_line_downloader(fake_downloader):
    return fake_downloader('echo "line one"\necho "line two"\necho "line three"\nexit 0')


# ── Job fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def store():
    from music_dl_api.api.jobs.store import JobStore

    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def make_runner(store):
    """Factory for runners bound to the test store; shuts them down afterwards."""
    from music_dl_api.api.jobs.runner import JobRunner

    runners = []

    def _make(downloader_path: str, **kwargs) -> JobRunner:
        kwargs.setdefault("kill_grace_seconds", 2.0)
        runner = JobRunner(store, downloader_path=downloader_path, **kwargs)
        runners.append(runner)
        return runner

    yield _make
    for runner in runners:
        await runner.shutdown()


@pytest.fixture
def wait_until():
    """Poll an async predicate until it returns a truthy value."""

    async def _wait(predicate, timeout: float = 10.0, interval: float = 0.02):
        deadline = time.monotonic() + timeout
        while True:
            result = await predicate()
            if result:
                return result
            if time.monotonic() > deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(three_line_downloader):
    """Create a test FastAPI app with a fresh per-test job store."""
    from music_dl_api.api.config import ApiSettings
    from music_dl_api.api.deps import providers as _prov
    from music_dl_api.api.main import create_app

    settings = ApiSettings(downloader_path=three_line_downloader, kill_grace_seconds=2.0)
    application = create_app(settings)
    yield application

    # ASGITransport does not run the lifespan, so tear down by hand.
    if _prov._job_runner is not None:
        await _prov._job_runner.shutdown()
    if _prov._job_store is not None:
        await _prov._job_store.close()
    _prov.configure(None)
    _prov.get_settings.cache_clear()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
