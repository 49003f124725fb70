"""Singleton dependency providers for FastAPI ``Depends()``."""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from ..config import ApiSettings


@lru_cache
def get_settings() -> ApiSettings:
    return ApiSettings()


# Lazy singletons, initialised at first call rather than import time
# so the event loop is already running when async resources are needed.

_settings: Optional[ApiSettings] = None
_job_store = None
_job_runner = None


def configure(settings: Optional[ApiSettings]) -> None:
    """Pin *settings* for the singletons below and drop existing ones."""
    global _settings, _job_store, _job_runner
    _settings = settings
    _job_store = None
    _job_runner = None


def active_settings() -> ApiSettings:
    return _settings if _settings is not None else get_settings()


def get_job_store():
    """Return the singleton ``JobStore``."""
    global _job_store
    if _job_store is None:
        from ..jobs.store import JobStore

        _job_store = JobStore(max_log_lines=active_settings().max_log_lines)
    return _job_store


def get_job_runner():
    """Return the singleton ``JobRunner``."""
    global _job_runner
    if _job_runner is None:
        from ..jobs.runner import JobRunner

        settings = active_settings()
        _job_runner = JobRunner(
            get_job_store(),
            downloader_path=settings.downloader_path,
            default_timeout=settings.default_timeout,
            max_line_bytes=settings.max_line_bytes,
            kill_grace_seconds=settings.kill_grace_seconds,
        )
    return _job_runner
